"""HTTP controller layer for reservation queue requests."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from seatflow.controllers.dependencies import get_queue_service
from seatflow.domain.models import RequestStatus, RequestType, ReservationRequest
from seatflow.services.queue_service import (
    DuplicateActiveRequestError,
    QueueValidationError,
    RequestNotCancelableError,
    RequestNotFoundError,
    RequestOwnershipError,
    ReservationQueueService,
)
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


class EnqueueRequest(BaseModel):
    """Input DTO validated before entering service layer."""

    student_id: str = Field(min_length=1, max_length=64)
    request_type: RequestType
    room: str = Field(min_length=1, max_length=32)
    seat: str | None = Field(default=None, max_length=32)
    auto_return_current: bool = False

    @field_validator("student_id", "room")
    @classmethod
    def strip_identifiers(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must be non-empty")
        return stripped

    @model_validator(mode="after")
    def require_seat_for_seat_requests(self) -> "EnqueueRequest":
        if self.request_type is RequestType.SEAT and not (self.seat and self.seat.strip()):
            raise ValueError("seat is required for SEAT requests")
        return self


class ReservationRequestResponse(BaseModel):
    id: int = Field(gt=0)
    student_id: str
    request_type: RequestType
    room: str
    seat: str | None
    status: RequestStatus
    queue_position: int = Field(ge=0)
    priority: int
    auto_return_current: bool
    retry_count: int = Field(ge=0)
    max_retries: int = Field(ge=0)
    scheduled_at: datetime
    processed_at: datetime | None
    error_message: str | None
    will_retry: bool
    created_at: datetime
    updated_at: datetime


class QueueStatsResponse(BaseModel):
    waiting: dict[str, int]
    processing: dict[str, int]
    average_processing_seconds: float = Field(ge=0.0)


def to_response(request: ReservationRequest) -> ReservationRequestResponse:
    return ReservationRequestResponse(
        id=request.request_id,
        student_id=request.student_id,
        request_type=request.request_type,
        room=request.room,
        seat=request.seat,
        status=request.status,
        queue_position=request.queue_position,
        priority=request.priority,
        auto_return_current=request.auto_return_current,
        retry_count=request.retry_count,
        max_retries=request.max_retries,
        scheduled_at=request.scheduled_at,
        processed_at=request.processed_at,
        error_message=request.error_message,
        will_retry=request.will_retry,
        created_at=request.created_at,
        updated_at=request.updated_at,
    )


@router.post(
    "/requests",
    response_model=ReservationRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enqueue_request(
    payload: EnqueueRequest,
    service: ReservationQueueService = Depends(get_queue_service),
) -> ReservationRequestResponse:
    try:
        request = service.enqueue(
            student_id=payload.student_id,
            request_type=payload.request_type,
            room=payload.room,
            seat=payload.seat,
            auto_return_current=payload.auto_return_current,
        )
        return to_response(request)
    except DuplicateActiveRequestError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except QueueValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected enqueue failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to enqueue request",
        ) from exc


@router.get(
    "/requests/{request_id}",
    response_model=ReservationRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def get_request(
    request_id: int,
    service: ReservationQueueService = Depends(get_queue_service),
) -> ReservationRequestResponse:
    try:
        return to_response(service.get_request(request_id))
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc


@router.delete(
    "/requests/{request_id}",
    response_model=ReservationRequestResponse,
    status_code=status.HTTP_200_OK,
)
async def cancel_request(
    request_id: int,
    student_id: str = Query(min_length=1, max_length=64),
    service: ReservationQueueService = Depends(get_queue_service),
) -> ReservationRequestResponse:
    try:
        return to_response(service.cancel(request_id, student_id.strip()))
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except RequestOwnershipError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    except RequestNotCancelableError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected cancel failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel request",
        ) from exc


@router.get(
    "/students/{student_id}",
    response_model=list[ReservationRequestResponse],
    status_code=status.HTTP_200_OK,
)
async def list_student_requests(
    student_id: str,
    active_only: bool = False,
    service: ReservationQueueService = Depends(get_queue_service),
) -> list[ReservationRequestResponse]:
    return [
        to_response(request)
        for request in service.list_for_student(student_id, active_only=active_only)
    ]


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    status_code=status.HTTP_200_OK,
)
async def queue_stats(
    service: ReservationQueueService = Depends(get_queue_service),
) -> QueueStatsResponse:
    return QueueStatsResponse(**service.stats())
