"""Periodic driver that runs auto-extension and drains the reservation queue."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

from seatflow.services.adapter import SeatAdapter, classify_failure
from seatflow.services.auto_extension_service import AutoExtensionService, ExtensionTickSummary
from seatflow.services.ingestion_service import SnapshotIngestionService
from seatflow.services.queue_service import ReservationQueueService, RoomDrainSummary
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class TickSummary:
    skipped: bool = False
    recovered: List[int] = field(default_factory=list)
    extension: Optional[ExtensionTickSummary] = None
    rooms: List[RoomDrainSummary] = field(default_factory=list)
    events_ingested: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "recovered": list(self.recovered),
            "extension": self.extension.to_dict() if self.extension is not None else None,
            "rooms": [room.to_dict() for room in self.rooms],
            "events_ingested": self.events_ingested,
        }


class SchedulerDriver:
    """One tick: orphan recovery, auto-extension, then every room concurrently.

    A non-blocking guard makes a tick that starts while another is still
    running return immediately with ``skipped=True``.
    """

    def __init__(
        self,
        adapter: SeatAdapter,
        queue_service: ReservationQueueService,
        auto_extension_service: AutoExtensionService,
        ingestion_service: SnapshotIngestionService,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adapter = adapter
        self._queue = queue_service
        self._auto_extension = auto_extension_service
        self._ingestion = ingestion_service
        self._tick_guard = Lock()

    @property
    def is_running(self) -> bool:
        return self._tick_guard.locked()

    async def _poll_and_ingest(self, room: str) -> int:
        try:
            states = await asyncio.wait_for(
                self._adapter.poll_status(room),
                timeout=self._settings.adapter_timeout_seconds,
            )
        except Exception as exc:
            error = classify_failure(exc)
            logger.warning(
                "Status poll failed | room=%s | kind=%s | reason=%s",
                room,
                type(error).__name__,
                error,
            )
            return 0
        return len(self._ingestion.ingest(room, states))

    async def _run_room(self, room: str, poll: bool) -> tuple[int, RoomDrainSummary]:
        ingested = await self._poll_and_ingest(room) if poll else 0
        return ingested, await self._queue.drain_room(room)

    async def tick(self) -> TickSummary:
        if not self._tick_guard.acquire(blocking=False):
            logger.info("Tick skipped; previous tick still running")
            return TickSummary(skipped=True)
        try:
            summary = TickSummary()
            summary.recovered = self._queue.recover_orphans()
            summary.extension = await self._auto_extension.process_all()

            monitored = set(self._settings.monitored_rooms)
            rooms = sorted(monitored | set(self._queue.rooms_with_due_requests()))
            results = await asyncio.gather(
                *(self._run_room(room, room in monitored) for room in rooms)
            )
            for ingested, room_summary in results:
                summary.events_ingested += ingested
                summary.rooms.append(room_summary)

            logger.info(
                "Tick finished | rooms=%s | recovered=%s | ingested=%s | completed=%s | retried=%s | failed=%s",
                len(summary.rooms),
                len(summary.recovered),
                summary.events_ingested,
                sum(room.completed for room in summary.rooms),
                sum(room.retried for room in summary.rooms),
                sum(room.failed for room in summary.rooms),
            )
            return summary
        finally:
            self._tick_guard.release()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "Driver loop started | interval_seconds=%s", self._settings.driver_interval_seconds
        )
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Driver tick crashed; continuing on next interval")
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self._settings.driver_interval_seconds
                )
            except asyncio.TimeoutError:
                continue
        logger.info("Driver loop stopped")
