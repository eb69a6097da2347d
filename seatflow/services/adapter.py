"""Seat portal adapter contract, failure classification and an in-memory portal."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from threading import RLock
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from seatflow.domain.models import AdapterResult, HeldSeat, SeatState, SeatStatus
from seatflow.utils.clock import Clock, utc_now
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


class AdapterError(Exception):
    """Base exception for seat portal failures."""

    retryable = True


class AdapterTransientError(AdapterError):
    """Network, timeout or rate-limit failure worth retrying."""

    retryable = True


class AdapterPermanentError(AdapterError):
    """Seat taken, student ineligible or any other terminal portal answer."""

    retryable = False


class SeatAdapter(Protocol):
    """Operations the scheduler and auto-extension engine consume."""

    async def reserve(self, student_id: str, room: str, seat: str) -> AdapterResult:
        ...

    async def extend(self, student_id: str) -> AdapterResult:
        ...

    async def release(self, student_id: str, room: str, seat: str) -> AdapterResult:
        ...

    async def poll_status(self, room: str) -> List[SeatState]:
        ...

    async def current_seat(self, student_id: str) -> Optional[HeldSeat]:
        ...


def classify_failure(exc: BaseException) -> AdapterError:
    """Map any adapter-side exception onto the transient/permanent split.

    Anything not already classified counts as transient.
    """
    if isinstance(exc, AdapterError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return AdapterTransientError("seat portal call timed out")
    if isinstance(exc, (ConnectionError, OSError)):
        return AdapterTransientError(f"seat portal unreachable: {exc}")
    return AdapterTransientError(f"unclassified adapter failure: {exc!r}")


def result_to_error(result: AdapterResult) -> AdapterError:
    reason = result.reason or "seat portal rejected the call"
    if result.retryable:
        return AdapterTransientError(reason)
    return AdapterPermanentError(reason)


class SimulatedSeatAdapter:
    """In-memory seat portal used for local runs and environment checks.

    Seats are created lazily as AVAILABLE. Reservations hold a seat for
    ``session_minutes``; each extension pushes the scheduled end forward by
    the same amount.
    """

    def __init__(
        self,
        rooms: Optional[Dict[str, Iterable[str]]] = None,
        session_minutes: int = 240,
        clock: Clock = utc_now,
    ) -> None:
        self._lock = RLock()
        self._clock = clock
        self._session = timedelta(minutes=session_minutes)
        self._seats: Dict[Tuple[str, str], Optional[str]] = {}
        self._holdings: Dict[str, HeldSeat] = {}
        for room, seats in (rooms or {}).items():
            for seat in seats:
                self._seats[(room, str(seat))] = None

    def occupy(self, room: str, seat: str, holder: str = "walk-in") -> None:
        """Mark a seat taken by someone outside the scheduler."""
        with self._lock:
            self._seats[(room, seat)] = holder

    def vacate(self, room: str, seat: str) -> None:
        with self._lock:
            holder = self._seats.get((room, seat))
            self._seats[(room, seat)] = None
            if holder is not None:
                held = self._holdings.get(holder)
                if held is not None and (held.room, held.seat) == (room, seat):
                    self._holdings.pop(holder, None)

    def set_scheduled_end(self, student_id: str, end_time: datetime) -> None:
        with self._lock:
            held = self._holdings[student_id]
            self._holdings[student_id] = HeldSeat(
                student_id=student_id,
                room=held.room,
                seat=held.seat,
                end_time=end_time,
            )

    async def reserve(self, student_id: str, room: str, seat: str) -> AdapterResult:
        with self._lock:
            holder = self._seats.get((room, seat))
            if holder is not None and holder != student_id:
                return AdapterResult(
                    success=False,
                    reason=f"seat {room}/{seat} is taken",
                    retryable=False,
                )
            if student_id in self._holdings:
                return AdapterResult(
                    success=False,
                    reason="student already holds a seat",
                    retryable=False,
                )
            self._seats[(room, seat)] = student_id
            self._holdings[student_id] = HeldSeat(
                student_id=student_id,
                room=room,
                seat=seat,
                end_time=self._clock() + self._session,
            )
        logger.info("Simulated reserve | student_id=%s | room=%s | seat=%s", student_id, room, seat)
        return AdapterResult(success=True)

    async def extend(self, student_id: str) -> AdapterResult:
        with self._lock:
            held = self._holdings.get(student_id)
            if held is None:
                return AdapterResult(success=False, reason="no seat to extend", retryable=False)
            base = held.end_time or self._clock()
            self._holdings[student_id] = HeldSeat(
                student_id=student_id,
                room=held.room,
                seat=held.seat,
                end_time=base + self._session,
            )
        return AdapterResult(success=True)

    async def release(self, student_id: str, room: str, seat: str) -> AdapterResult:
        with self._lock:
            held = self._holdings.get(student_id)
            if held is None or (held.room, held.seat) != (room, seat):
                return AdapterResult(success=False, reason="seat not held", retryable=False)
            self._holdings.pop(student_id)
            self._seats[(room, seat)] = None
        return AdapterResult(success=True)

    async def poll_status(self, room: str) -> List[SeatState]:
        observed_at = self._clock()
        with self._lock:
            return [
                SeatState(
                    room=seat_room,
                    seat=seat,
                    status=SeatStatus.AVAILABLE if holder is None else SeatStatus.OCCUPIED,
                    observed_at=observed_at,
                )
                for (seat_room, seat), holder in sorted(self._seats.items())
                if seat_room == room
            ]

    async def current_seat(self, student_id: str) -> Optional[HeldSeat]:
        with self._lock:
            return self._holdings.get(student_id)
