"""Turns successive seat-status snapshots into occupancy events."""

from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional, Sequence, Tuple

from seatflow.domain.models import SeatEvent, SeatState, SeatStatus
from seatflow.repository.data_repository import DataRepository, InvalidEventSequenceError
from seatflow.services.calendar_service import CalendarService
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


class SnapshotIngestionService:
    """Diffs each room's snapshot against the previous one.

    The first snapshot seen for a room only primes the comparison.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        calendar_service: Optional[CalendarService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._calendar = calendar_service or CalendarService(self._repository, self._settings)
        self._lock = Lock()
        self._previous: Dict[str, Dict[str, SeatStatus]] = {}

    def reset(self, room: Optional[str] = None) -> None:
        with self._lock:
            if room is None:
                self._previous.clear()
            else:
                self._previous.pop(room, None)

    def ingest(self, room: str, states: Sequence[SeatState]) -> List[Tuple[str, SeatEvent]]:
        current = {state.seat: state for state in states if state.room == room}
        with self._lock:
            previous = self._previous.get(room)
            self._previous[room] = {seat: state.status for seat, state in current.items()}
        if previous is None:
            logger.info("Snapshot primed | room=%s | seats=%s", room, len(current))
            return []

        appended: List[Tuple[str, SeatEvent]] = []
        for seat, state in sorted(current.items()):
            before = previous.get(seat)
            if before is SeatStatus.AVAILABLE and state.status is SeatStatus.OCCUPIED:
                event = SeatEvent.OCCUPIED
                if self._repository.active_session(room, seat) is not None:
                    continue
            elif before is SeatStatus.OCCUPIED and state.status is SeatStatus.AVAILABLE:
                event = SeatEvent.VACATED
                if self._repository.active_session(room, seat) is None:
                    continue
            else:
                continue

            try:
                self._repository.append_event(
                    room=room,
                    seat=seat,
                    event=event,
                    occurred_at=state.observed_at,
                    period_type=self._calendar.period_for(state.observed_at),
                )
            except InvalidEventSequenceError as exc:
                logger.warning(
                    "Snapshot event rejected | room=%s | seat=%s | event=%s | reason=%s",
                    room,
                    seat,
                    event.value,
                    exc,
                )
                continue
            appended.append((seat, event))

        if appended:
            logger.info("Snapshot ingested | room=%s | events=%s", room, len(appended))
        return appended
