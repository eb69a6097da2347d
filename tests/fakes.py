from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from seatflow.domain.models import AdapterResult, HeldSeat, SeatState, SeatStatus
from seatflow.services.adapter import AdapterTransientError
from seatflow.utils.config import Settings, get_settings


def build_test_settings(tmp_path, filename: str, **overrides) -> Settings:
    get_settings.cache_clear()
    base = get_settings()
    defaults = dict(
        database_path=tmp_path / filename,
        timezone="UTC",
        admin_token=None,
        queue_backoff_base_seconds=15.0,
        queue_backoff_cap_seconds=300.0,
        adapter_timeout_seconds=2.0,
        driver_enabled=False,
        monitored_rooms=(),
        synthetic_seed_on_startup=False,
    )
    defaults.update(overrides)
    return replace(base, **defaults)


class ManualClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedAdapter:
    """Seat portal double whose reserve outcomes are scripted per call.

    Outcomes: ``ok``, ``transient`` (raises), ``rejected`` (retryable result),
    ``permanent`` (non-retryable result), ``error`` (unclassified exception),
    ``slow`` (sleeps past any short timeout).
    """

    def __init__(self, reserve_script: Optional[List[str]] = None) -> None:
        self.reserve_script = list(reserve_script or [])
        self.extend_script: List[str] = []
        self.reserve_calls: List[tuple[str, str, str]] = []
        self.release_calls: List[tuple[str, str, str]] = []
        self.extend_calls: List[str] = []
        self.poll_calls: List[str] = []
        self.held: Dict[str, HeldSeat] = {}
        self.statuses: Dict[str, List[SeatState]] = {}
        self.on_reserve: Optional[Callable[[str, str, str], None]] = None

    async def reserve(self, student_id: str, room: str, seat: str) -> AdapterResult:
        self.reserve_calls.append((student_id, room, seat))
        if self.on_reserve is not None:
            self.on_reserve(student_id, room, seat)
        await asyncio.sleep(0)
        outcome = self.reserve_script.pop(0) if self.reserve_script else "ok"
        if outcome == "transient":
            raise AdapterTransientError("portal rate limited")
        if outcome == "rejected":
            return AdapterResult(success=False, reason="portal busy", retryable=True)
        if outcome == "permanent":
            return AdapterResult(success=False, reason="seat is taken", retryable=False)
        if outcome == "error":
            raise RuntimeError("unexpected portal markup")
        if outcome == "slow":
            await asyncio.sleep(5)
        self.held[student_id] = HeldSeat(student_id=student_id, room=room, seat=seat, end_time=None)
        return AdapterResult(success=True)

    async def extend(self, student_id: str) -> AdapterResult:
        self.extend_calls.append(student_id)
        outcome = self.extend_script.pop(0) if self.extend_script else "ok"
        if outcome == "transient":
            raise AdapterTransientError("portal timeout")
        if outcome == "permanent":
            return AdapterResult(success=False, reason="extension limit", retryable=False)
        held = self.held.get(student_id)
        if held is not None and held.end_time is not None:
            self.held[student_id] = replace(held, end_time=held.end_time + timedelta(hours=4))
        return AdapterResult(success=True)

    async def release(self, student_id: str, room: str, seat: str) -> AdapterResult:
        self.release_calls.append((student_id, room, seat))
        self.held.pop(student_id, None)
        return AdapterResult(success=True)

    async def poll_status(self, room: str) -> List[SeatState]:
        self.poll_calls.append(room)
        return list(self.statuses.get(room, []))

    async def current_seat(self, student_id: str) -> Optional[HeldSeat]:
        return self.held.get(student_id)


def seat_states(room: str, observed_at: datetime, **statuses: str) -> List[SeatState]:
    """Build a snapshot from ``seat_<id>=STATUS`` keyword pairs."""
    return [
        SeatState(
            room=room,
            seat=key.removeprefix("seat_"),
            status=SeatStatus(value),
            observed_at=observed_at,
        )
        for key, value in statuses.items()
    ]
