"""Reservation queue scheduler: enqueue, per-room attempts, retries and cancel."""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from seatflow.domain.constraints import RetryPolicy, backoff_seconds, validate_retry_policy
from seatflow.domain.models import (
    RequestStatus,
    RequestType,
    ReservationRequest,
    SeatEvent,
    SeatStatus,
)
from seatflow.repository.data_repository import (
    ActiveRequestConflictError,
    DataRepository,
    RepositoryError,
)
from seatflow.services.adapter import (
    AdapterError,
    AdapterPermanentError,
    AdapterTransientError,
    SeatAdapter,
    classify_failure,
    result_to_error,
)
from seatflow.services.calendar_service import CalendarService
from seatflow.services.student_locks import StudentLocks
from seatflow.utils.clock import Clock, utc_now
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

ORPHAN_REASON = "Attempt was interrupted; will retry"


class QueueError(Exception):
    """Base exception for queue workflow failures."""


class QueueValidationError(QueueError):
    """Raised when an enqueue payload is malformed."""


class DuplicateActiveRequestError(QueueError):
    """Raised when the student already has a non-terminal request for the room."""


class RequestNotFoundError(QueueError):
    """Raised when a request id does not exist."""


class RequestOwnershipError(QueueError):
    """Raised when a student acts on another student's request."""


class RequestNotCancelableError(QueueError):
    """Raised when the request is already terminal."""


@dataclass
class RoomDrainSummary:
    room: str
    attempted: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    discarded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room": self.room,
            "attempted": self.attempted,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "discarded": self.discarded,
        }


class ReservationQueueService:
    """Owns every reservation request lifecycle write.

    At most one request per room is PROCESSING at a time; the repository
    claims the room's head request with a compare-and-set so concurrent
    drains of the same room cannot double-dispatch.
    """

    def __init__(
        self,
        adapter: SeatAdapter,
        repository: Optional[DataRepository] = None,
        calendar_service: Optional[CalendarService] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        student_locks: Optional[StudentLocks] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._calendar = calendar_service or CalendarService(self._repository, self._settings)
        self._adapter = adapter
        self._clock = clock
        self._student_locks = student_locks or StudentLocks()
        self._policies = {
            RequestType.SEAT: RetryPolicy(
                max_retries=self._settings.queue_max_retries_seat,
                backoff_base_seconds=self._settings.queue_backoff_base_seconds,
                backoff_cap_seconds=self._settings.queue_backoff_cap_seconds,
            ),
            RequestType.EMPTY_SEAT_WAIT: RetryPolicy(
                max_retries=self._settings.queue_max_retries_empty_seat,
                backoff_base_seconds=self._settings.queue_backoff_base_seconds,
                backoff_cap_seconds=self._settings.queue_backoff_cap_seconds,
            ),
        }
        for policy in self._policies.values():
            validate_retry_policy(policy)

    def _priority_for(self, request_type: RequestType) -> int:
        if request_type is RequestType.EMPTY_SEAT_WAIT:
            return self._settings.queue_empty_seat_priority
        return self._settings.queue_seat_priority

    # ------------------------------------------------------------------
    # Public request operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        student_id: str,
        request_type: RequestType,
        room: str,
        seat: Optional[str] = None,
        auto_return_current: bool = False,
        priority: Optional[int] = None,
    ) -> ReservationRequest:
        student_id = (student_id or "").strip()
        room = (room or "").strip()
        seat = seat.strip() if seat is not None and seat.strip() else None
        if not student_id:
            raise QueueValidationError("student_id must be non-empty")
        if not room:
            raise QueueValidationError("room must be non-empty")
        if request_type is RequestType.SEAT and seat is None:
            raise QueueValidationError("seat is required for SEAT requests")

        now = self._clock()
        try:
            request = self._repository.create_request(
                student_id=student_id,
                request_type=request_type,
                room=room,
                seat=seat,
                priority=priority if priority is not None else self._priority_for(request_type),
                auto_return_current=auto_return_current,
                max_retries=self._policies[request_type].max_retries,
                scheduled_at=now,
                now=now,
            )
        except ActiveRequestConflictError as exc:
            raise DuplicateActiveRequestError(
                f"Student {student_id} already has an active request for room {room}"
            ) from exc

        logger.info(
            "Request enqueued | request_id=%s | student_id=%s | type=%s | room=%s | seat=%s | position=%s",
            request.request_id,
            student_id,
            request_type.value,
            room,
            seat,
            request.queue_position,
        )
        return request

    def get_request(self, request_id: int) -> ReservationRequest:
        request = self._repository.get_request(request_id)
        if request is None:
            raise RequestNotFoundError(f"Request {request_id} not found")
        return request

    def list_for_student(
        self,
        student_id: str,
        active_only: bool = False,
    ) -> List[ReservationRequest]:
        return self._repository.list_requests_for_student(student_id, active_only=active_only)

    def cancel(self, request_id: int, student_id: str) -> ReservationRequest:
        """Cancel a WAITING or PROCESSING request owned by ``student_id``.

        A PROCESSING cancel wins the status compare-and-set; the in-flight
        attempt then finds the request no longer PROCESSING and drops its result.
        """
        request = self.get_request(request_id)
        if request.student_id != student_id:
            raise RequestOwnershipError(
                f"Request {request_id} does not belong to student {student_id}"
            )
        previous = self._repository.cancel_request(request_id, self._clock())
        if previous is None:
            raise RequestNotCancelableError(
                f"Request {request_id} is already {self.get_request(request_id).status.value}"
            )
        logger.info(
            "Request canceled | request_id=%s | student_id=%s | from=%s",
            request_id,
            student_id,
            previous.value,
        )
        return self.get_request(request_id)

    def stats(self) -> Dict[str, Any]:
        counts: Dict[str, Any] = {}
        for status in (RequestStatus.WAITING, RequestStatus.PROCESSING):
            counts[status.value.lower()] = {
                request_type.value: self._repository.count_requests(
                    status=status, request_type=request_type
                )
                for request_type in RequestType
            }
        counts["average_processing_seconds"] = round(
            self._repository.average_processing_seconds(
                self._settings.queue_stats_recent_completed
            ),
            2,
        )
        return counts

    def cleanup(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        cutoff = now - timedelta(days=self._settings.queue_cleanup_after_days)
        deleted = self._repository.delete_finished_requests(cutoff)
        logger.info("Finished requests cleaned up | deleted=%s | cutoff=%s", deleted, cutoff)
        return deleted

    def recover_orphans(self) -> List[int]:
        """Return interrupted PROCESSING requests to WAITING without spending a retry."""
        recovered = self._repository.requeue_orphaned_requests(self._clock(), ORPHAN_REASON)
        if recovered:
            logger.warning("Orphaned requests requeued | request_ids=%s", recovered)
        return recovered

    def rooms_with_due_requests(self) -> List[str]:
        return self._repository.list_rooms_with_due_requests(self._clock())

    # ------------------------------------------------------------------
    # Attempt cycle
    # ------------------------------------------------------------------

    async def _call(self, coroutine: Any) -> Any:
        try:
            return await asyncio.wait_for(coroutine, timeout=self._settings.adapter_timeout_seconds)
        except Exception as exc:
            raise classify_failure(exc) from exc

    async def _select_seat(self, request: ReservationRequest) -> str:
        if request.request_type is RequestType.SEAT:
            return str(request.seat)

        states = await self._call(self._adapter.poll_status(request.room))
        if request.seat is not None:
            for state in states:
                if state.seat == request.seat and state.status is SeatStatus.AVAILABLE:
                    return request.seat
            raise AdapterTransientError(f"seat {request.room}/{request.seat} is still occupied")
        for state in sorted(states, key=lambda item: item.seat):
            if state.status is SeatStatus.AVAILABLE:
                return state.seat
        raise AdapterTransientError(f"no vacant seat in room {request.room}")

    async def _return_current_seat(self, request: ReservationRequest, seat: str) -> None:
        held = await self._call(self._adapter.current_seat(request.student_id))
        if held is None or (held.room, held.seat) == (request.room, seat):
            return
        result = await self._call(
            self._adapter.release(request.student_id, held.room, held.seat)
        )
        if not result.success:
            raise result_to_error(result)
        released_at = self._clock()
        if self._repository.active_session(held.room, held.seat) is not None:
            try:
                self._repository.append_event(
                    room=held.room,
                    seat=held.seat,
                    event=SeatEvent.VACATED,
                    occurred_at=released_at,
                    period_type=self._calendar.period_for(released_at),
                )
            except RepositoryError as exc:
                logger.warning(
                    "Release event not recorded | room=%s | seat=%s | reason=%s",
                    held.room,
                    held.seat,
                    exc,
                )
        logger.info(
            "Prior seat returned | request_id=%s | student_id=%s | room=%s | seat=%s",
            request.request_id,
            request.student_id,
            held.room,
            held.seat,
        )

    async def _attempt(self, request: ReservationRequest) -> str:
        """Run one adapter attempt; returns the reserved seat or raises AdapterError."""
        seat = await self._select_seat(request)
        async with self._student_locks.for_student(request.student_id):
            if request.auto_return_current:
                await self._return_current_seat(request, seat)
            result = await self._call(self._adapter.reserve(request.student_id, request.room, seat))
        if not result.success:
            raise result_to_error(result)
        return seat

    def _handle_failure(
        self,
        request: ReservationRequest,
        error: AdapterError,
        summary: RoomDrainSummary,
    ) -> bool:
        """Apply the retry policy; returns True when the request went back to WAITING."""
        now = self._clock()
        kind = type(error).__name__
        if isinstance(error, AdapterPermanentError):
            self._mark_failed(request, f"{error}; will not retry", kind, summary)
            return False

        retry_count = request.retry_count + 1
        policy = self._policies[request.request_type]
        if retry_count < request.max_retries:
            delay = backoff_seconds(policy, retry_count)
            requeued = self._repository.requeue_request(
                request.request_id,
                retry_count=retry_count,
                scheduled_at=now + timedelta(seconds=delay),
                error_message=f"{error}; will retry (attempt {retry_count}/{request.max_retries})",
                now=now,
            )
            if requeued:
                summary.retried += 1
                logger.info(
                    "Request requeued | request_id=%s | kind=%s | retry_count=%s | delay_seconds=%.1f",
                    request.request_id,
                    kind,
                    retry_count,
                    delay,
                )
                return True
            summary.discarded += 1
            logger.info(
                "Retry result discarded; request left PROCESSING meanwhile | request_id=%s | kind=%s",
                request.request_id,
                kind,
            )
            return False

        self._mark_failed(
            request,
            f"{error}; will not retry (retries exhausted {retry_count}/{request.max_retries})",
            kind,
            summary,
            retry_count=min(retry_count, request.max_retries),
        )
        return False

    def _mark_failed(
        self,
        request: ReservationRequest,
        message: str,
        kind: str,
        summary: RoomDrainSummary,
        retry_count: Optional[int] = None,
    ) -> None:
        if not self._repository.fail_request(
            request.request_id, message, self._clock(), retry_count=retry_count
        ):
            summary.discarded += 1
            logger.info(
                "Failure result discarded; request left PROCESSING meanwhile | request_id=%s | kind=%s",
                request.request_id,
                kind,
            )
            return
        summary.failed += 1
        logger.info(
            "Request failed | request_id=%s | kind=%s | reason=%s | retry=no",
            request.request_id,
            kind,
            message,
        )

    def _complete(self, request: ReservationRequest, seat: str, now: datetime) -> bool:
        return self._repository.complete_request(
            request.request_id,
            now,
            occupied_event=(request.room, seat, now, self._calendar.period_for(now)),
        )

    async def _process(self, request: ReservationRequest, summary: RoomDrainSummary) -> bool:
        """Attempt one claimed request; returns True when the room should keep draining."""
        summary.attempted += 1
        try:
            seat = await self._attempt(request)
        except AdapterError as exc:
            return not await asyncio.to_thread(self._handle_failure, request, exc, summary)

        now = self._clock()
        completed = await asyncio.to_thread(self._complete, request, seat, now)
        if not completed:
            summary.discarded += 1
            logger.info(
                "Attempt result discarded; request left PROCESSING meanwhile | request_id=%s | seat=%s",
                request.request_id,
                seat,
            )
            return True
        summary.completed += 1
        logger.info(
            "Request completed | request_id=%s | student_id=%s | room=%s | seat=%s | retry_count=%s",
            request.request_id,
            request.student_id,
            request.room,
            seat,
            request.retry_count,
        )
        return True

    async def drain_room(self, room: str) -> RoomDrainSummary:
        """Attempt due requests of one room until one is rescheduled or none is due."""
        summary = RoomDrainSummary(room=room)
        while True:
            try:
                request = await asyncio.to_thread(
                    self._repository.claim_next_request, room, self._clock()
                )
                if request is None:
                    break
                keep_draining = await self._process(request, summary)
            except (sqlite3.Error, RepositoryError):
                logger.exception("Storage failure while draining room | room=%s", room)
                break
            if not keep_draining:
                break
        return summary
