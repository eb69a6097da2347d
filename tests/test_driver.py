from __future__ import annotations

import asyncio
from datetime import timedelta

from fakes import ManualClock, ScriptedAdapter, build_test_settings, seat_states
from seatflow.domain.models import HeldSeat, RequestStatus, RequestType
from seatflow.repository.data_repository import DataRepository
from seatflow.services.auto_extension_service import AutoExtensionService
from seatflow.services.driver_service import SchedulerDriver
from seatflow.services.ingestion_service import SnapshotIngestionService
from seatflow.services.queue_service import ReservationQueueService
from seatflow.services.student_locks import StudentLocks


class UnreachablePortal(ScriptedAdapter):
    async def poll_status(self, room):
        self.poll_calls.append(room)
        raise ConnectionError("portal unreachable")


def _build_driver(tmp_path, adapter: ScriptedAdapter | None = None, **overrides):
    settings = build_test_settings(tmp_path, "driver.db", **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    adapter = adapter or ScriptedAdapter()
    clock = ManualClock()
    locks = StudentLocks()
    queue = ReservationQueueService(
        adapter=adapter, repository=repository, settings=settings, clock=clock, student_locks=locks
    )
    extension = AutoExtensionService(
        adapter=adapter, repository=repository, settings=settings, clock=clock, student_locks=locks
    )
    ingestion = SnapshotIngestionService(repository=repository, settings=settings)
    driver = SchedulerDriver(
        adapter=adapter,
        queue_service=queue,
        auto_extension_service=extension,
        ingestion_service=ingestion,
        settings=settings,
    )
    return driver, queue, extension, repository, adapter, clock


def test_overlapping_tick_is_skipped(tmp_path):
    driver, queue, _, repository, adapter, _ = _build_driver(tmp_path)
    request = queue.enqueue("s1", RequestType.SEAT, "A", "1")

    assert driver._tick_guard.acquire(blocking=False)
    try:
        assert driver.is_running
        summary = asyncio.run(driver.tick())
    finally:
        driver._tick_guard.release()

    assert summary.skipped is True
    assert adapter.reserve_calls == []
    assert repository.get_request(request.request_id).status is RequestStatus.WAITING

    assert asyncio.run(driver.tick()).skipped is False
    assert repository.get_request(request.request_id).status is RequestStatus.COMPLETED


def test_tick_runs_extension_pass_then_drains_rooms(tmp_path):
    driver, queue, extension, repository, adapter, clock = _build_driver(tmp_path)
    extension.update_config("s9", is_enabled=True)
    adapter.held["s9"] = HeldSeat(
        student_id="s9", room="C", seat="7", end_time=clock.now + timedelta(minutes=10)
    )
    queue.enqueue("s1", RequestType.SEAT, "B", "2")
    queue.enqueue("s2", RequestType.SEAT, "A", "5")

    summary = asyncio.run(driver.tick())

    assert summary.extension.extended == 1
    assert [room.room for room in summary.rooms] == ["A", "B"]
    assert all(room.completed == 1 for room in summary.rooms)
    assert adapter.extend_calls == ["s9"]
    payload = summary.to_dict()
    assert payload["extension"]["extended"] == 1
    assert payload["rooms"][0]["room"] == "A"


def test_tick_recovers_orphaned_requests_before_draining(tmp_path):
    driver, queue, _, repository, _, clock = _build_driver(tmp_path)
    request = queue.enqueue("s1", RequestType.SEAT, "A", "1")
    claimed = repository.claim_next_request("A", clock.now)
    assert claimed.request_id == request.request_id

    summary = asyncio.run(driver.tick())

    assert summary.recovered == [request.request_id]
    finished = repository.get_request(request.request_id)
    assert finished.status is RequestStatus.COMPLETED
    assert finished.retry_count == 0


def test_monitored_rooms_are_polled_and_diffed(tmp_path):
    driver, _, _, repository, adapter, clock = _build_driver(tmp_path, monitored_rooms=("A",))

    adapter.statuses["A"] = seat_states("A", clock.now, seat_1="AVAILABLE", seat_2="AVAILABLE")
    first = asyncio.run(driver.tick())
    assert first.events_ingested == 0
    assert adapter.poll_calls == ["A"]

    adapter.statuses["A"] = seat_states(
        "A", clock.now + timedelta(minutes=1), seat_1="OCCUPIED", seat_2="AVAILABLE"
    )
    second = asyncio.run(driver.tick())

    assert second.events_ingested == 1
    assert repository.active_session("A", "1") is not None
    assert repository.active_session("A", "2") is None


def test_failed_status_poll_does_not_stop_the_tick(tmp_path):
    adapter = UnreachablePortal()
    driver, queue, _, repository, _, _ = _build_driver(
        tmp_path, adapter=adapter, monitored_rooms=("A",)
    )
    request = queue.enqueue("s1", RequestType.SEAT, "A", "1")

    summary = asyncio.run(driver.tick())

    assert summary.events_ingested == 0
    assert adapter.poll_calls == ["A"]
    assert repository.get_request(request.request_id).status is RequestStatus.COMPLETED


def test_extension_policy_survives_tick_before_seat_is_reserved(tmp_path):
    driver, queue, extension, repository, adapter, clock = _build_driver(tmp_path)
    extension.update_config("s1", is_enabled=True, trigger_minutes_before=30, max_auto_extensions=4)
    queue.enqueue("s1", RequestType.SEAT, "A", "1")

    first = asyncio.run(driver.tick())

    assert first.extension.skipped == 1
    assert first.rooms[0].completed == 1
    assert repository.get_auto_extension_config("s1").is_enabled is True

    clock.advance(minutes=5)
    adapter.held["s1"] = HeldSeat(
        student_id="s1", room="A", seat="1", end_time=clock.now + timedelta(minutes=20)
    )
    second = asyncio.run(driver.tick())

    assert second.extension.extended == 1
    assert adapter.extend_calls == ["s1"]
    assert repository.get_auto_extension_config("s1").current_extension_count == 1
