from __future__ import annotations

from fastapi.testclient import TestClient

from fakes import ScriptedAdapter, build_test_settings
from seatflow.main import create_app


def _build_client(tmp_path, admin_token: str | None = None, adapter: ScriptedAdapter | None = None):
    settings = build_test_settings(tmp_path, "api_flow.db", admin_token=admin_token)
    adapter = adapter or ScriptedAdapter()
    return TestClient(create_app(settings=settings, adapter=adapter)), adapter


def test_queue_end_to_end_flow(tmp_path):
    admin_token = "secret-admin-token"
    client, adapter = _build_client(tmp_path, admin_token=admin_token)

    with client:
        created = client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "SEAT", "room": "A", "seat": "1"},
        )
        assert created.status_code == 201
        payload = created.json()
        assert payload["status"] == "WAITING"
        assert payload["queue_position"] == 0
        request_id = payload["id"]

        duplicate = client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "SEAT", "room": "A", "seat": "2"},
        )
        assert duplicate.status_code == 409

        stats = client.get("/queue/stats").json()
        assert stats["waiting"]["SEAT"] == 1
        assert stats["processing"]["SEAT"] == 0

        vacant = client.get("/predictions/A/1")
        assert vacant.status_code == 200
        assert vacant.json()["currently_occupied"] is False

        unauth_tick = client.post("/admin/tick")
        assert unauth_tick.status_code == 401

        login_response = client.post("/login", json={"admin_token": admin_token})
        assert login_response.status_code == 200
        headers = {"Authorization": f"Bearer {login_response.json()['access_token']}"}

        tick = client.post("/admin/tick", headers=headers)
        assert tick.status_code == 200
        tick_payload = tick.json()
        assert tick_payload["skipped"] is False
        assert [room["room"] for room in tick_payload["rooms"]] == ["A"]
        assert tick_payload["rooms"][0]["completed"] == 1
        assert adapter.reserve_calls == [("s1", "A", "1")]

        completed = client.get(f"/queue/requests/{request_id}").json()
        assert completed["status"] == "COMPLETED"
        assert completed["processed_at"] is not None

        occupied = client.get("/predictions/A/1", params={"include_curve": True})
        assert occupied.status_code == 200
        occupied_payload = occupied.json()
        assert occupied_payload["currently_occupied"] is True
        assert occupied_payload["confidence"] == 0.0
        assert occupied_payload["survival_curve"]

        history = client.get("/queue/students/s1").json()
        assert [item["id"] for item in history] == [request_id]
        assert client.get("/queue/students/s1", params={"active_only": True}).json() == []


def test_queue_request_validation_and_cancel_errors(tmp_path):
    client, _ = _build_client(tmp_path)

    with client:
        missing_seat = client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "SEAT", "room": "A"},
        )
        assert missing_seat.status_code == 422

        blank_room = client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "EMPTY_SEAT_WAIT", "room": "  "},
        )
        assert blank_room.status_code == 422

        created = client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "EMPTY_SEAT_WAIT", "room": "A"},
        ).json()

        assert client.get("/queue/requests/999").status_code == 404
        assert client.delete("/queue/requests/999", params={"student_id": "s1"}).status_code == 404
        assert (
            client.delete(f"/queue/requests/{created['id']}", params={"student_id": "s2"}).status_code
            == 403
        )

        canceled = client.delete(f"/queue/requests/{created['id']}", params={"student_id": "s1"})
        assert canceled.status_code == 200
        assert canceled.json()["status"] == "CANCELED"

        again = client.delete(f"/queue/requests/{created['id']}", params={"student_id": "s1"})
        assert again.status_code == 409


def test_auto_extension_endpoints(tmp_path):
    client, adapter = _build_client(tmp_path)

    with client:
        default = client.get("/auto-extension/s1")
        assert default.status_code == 200
        assert default.json()["is_enabled"] is False

        saved = client.put(
            "/auto-extension/s1",
            json={"is_enabled": True, "trigger_minutes_before": 20, "max_auto_extensions": 2},
        )
        assert saved.status_code == 200
        assert saved.json()["remaining_extensions"] == 2

        half_window = client.put(
            "/auto-extension/s1",
            json={"is_enabled": True, "start_time": "09:00:00"},
        )
        assert half_window.status_code == 422

        out_of_bounds = client.put(
            "/auto-extension/s1",
            json={"is_enabled": True, "trigger_minutes_before": 0},
        )
        assert out_of_bounds.status_code == 422

        stats = client.get("/auto-extension/s1/stats").json()
        assert stats["max_auto_extensions"] == 2
        assert stats["current_extension_count"] == 0

        no_seat = client.post("/auto-extension/s1/extend")
        assert no_seat.status_code == 404

        client.post(
            "/queue/requests",
            json={"student_id": "s1", "request_type": "SEAT", "room": "A", "seat": "4"},
        )
        client.post("/admin/tick")
        extended = client.post("/auto-extension/s1/extend")
        assert extended.status_code == 200
        assert extended.json()["extended"] is True
        assert adapter.extend_calls == ["s1"]


def test_login_rejects_invalid_admin_token(tmp_path):
    client, _ = _build_client(tmp_path, admin_token="real-admin-token")
    with client:
        response = client.post("/login", json={"admin_token": "wrong-token"})
    assert response.status_code == 401


def test_admin_periods_round_trip_without_configured_token(tmp_path):
    client, _ = _build_client(tmp_path)

    with client:
        created = client.post(
            "/admin/periods",
            json={
                "name": "Finals week",
                "start_date": "2026-06-01",
                "end_date": "2026-06-07",
                "period_type": "FINALS",
            },
        )
        assert created.status_code == 201
        assert created.json()["period_type"] == "FINALS"

        backwards = client.post(
            "/admin/periods",
            json={
                "name": "Backwards",
                "start_date": "2026-06-07",
                "end_date": "2026-06-01",
                "period_type": "EXAM",
            },
        )
        assert backwards.status_code == 422

        periods = client.get("/admin/periods").json()
        assert [period["name"] for period in periods] == ["Finals week"]

        restamped = client.post(
            "/admin/periods/restamp",
            json={"start_date": "2026-06-01", "end_date": "2026-06-07", "period_type": "FINALS"},
        )
        assert restamped.status_code == 200
        assert restamped.json()["updated"] == 0

        refreshed = client.post("/admin/prediction-cache/refresh")
        assert refreshed.json()["sessions_loaded"] == 0
