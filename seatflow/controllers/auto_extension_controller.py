"""HTTP controller layer for per-student auto-extension settings."""

from __future__ import annotations

from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from seatflow.controllers.dependencies import get_auto_extension_service
from seatflow.domain.models import AutoExtensionConfig, TimeRestriction
from seatflow.services.auto_extension_service import (
    AutoExtensionService,
    ConfigInvalidError,
    ExtensionFailedError,
    NoHeldSeatError,
)
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/auto-extension", tags=["auto-extension"])


class AutoExtensionConfigRequest(BaseModel):
    """Bounds are re-checked by the service so non-HTTP callers get them too."""

    is_enabled: bool
    trigger_minutes_before: int | None = Field(default=None, gt=0, le=1440)
    max_auto_extensions: int | None = Field(default=None, ge=0)
    time_restriction: TimeRestriction = TimeRestriction.ALL_TIMES
    start_time: time | None = None
    end_time: time | None = None
    auto_return_on_empty_reservation: bool = False


class AutoExtensionConfigResponse(BaseModel):
    student_id: str
    is_enabled: bool
    trigger_minutes_before: int = Field(gt=0)
    max_auto_extensions: int = Field(ge=0)
    current_extension_count: int = Field(ge=0)
    remaining_extensions: int = Field(ge=0)
    last_reset_date: date | None
    time_restriction: TimeRestriction
    start_time: time | None
    end_time: time | None
    auto_return_on_empty_reservation: bool
    last_extended_at: datetime | None


class AutoExtensionStatsResponse(BaseModel):
    student_id: str
    is_enabled: bool
    current_extension_count: int = Field(ge=0)
    max_auto_extensions: int = Field(ge=0)
    remaining_extensions: int = Field(ge=0)
    last_extended_at: datetime | None
    last_reset_date: date | None


class ManualExtensionResponse(BaseModel):
    student_id: str
    extended: bool


def to_response(config: AutoExtensionConfig) -> AutoExtensionConfigResponse:
    return AutoExtensionConfigResponse(
        student_id=config.student_id,
        is_enabled=config.is_enabled,
        trigger_minutes_before=config.trigger_minutes_before,
        max_auto_extensions=config.max_auto_extensions,
        current_extension_count=config.current_extension_count,
        remaining_extensions=config.remaining_extensions,
        last_reset_date=config.last_reset_date,
        time_restriction=config.time_restriction,
        start_time=config.start_time,
        end_time=config.end_time,
        auto_return_on_empty_reservation=config.auto_return_on_empty_reservation,
        last_extended_at=config.last_extended_at,
    )


@router.get(
    "/{student_id}",
    response_model=AutoExtensionConfigResponse,
    status_code=status.HTTP_200_OK,
)
async def get_config(
    student_id: str,
    service: AutoExtensionService = Depends(get_auto_extension_service),
) -> AutoExtensionConfigResponse:
    return to_response(service.get_config(student_id))


@router.put(
    "/{student_id}",
    response_model=AutoExtensionConfigResponse,
    status_code=status.HTTP_200_OK,
)
async def update_config(
    student_id: str,
    payload: AutoExtensionConfigRequest,
    service: AutoExtensionService = Depends(get_auto_extension_service),
) -> AutoExtensionConfigResponse:
    try:
        config = service.update_config(
            student_id=student_id,
            is_enabled=payload.is_enabled,
            trigger_minutes_before=payload.trigger_minutes_before,
            max_auto_extensions=payload.max_auto_extensions,
            time_restriction=payload.time_restriction,
            start_time=payload.start_time,
            end_time=payload.end_time,
            auto_return_on_empty_reservation=payload.auto_return_on_empty_reservation,
        )
        return to_response(config)
    except ConfigInvalidError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected auto-extension config failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save auto-extension config",
        ) from exc


@router.get(
    "/{student_id}/stats",
    response_model=AutoExtensionStatsResponse,
    status_code=status.HTTP_200_OK,
)
async def get_stats(
    student_id: str,
    service: AutoExtensionService = Depends(get_auto_extension_service),
) -> AutoExtensionStatsResponse:
    return AutoExtensionStatsResponse(**service.stats(student_id))


@router.post(
    "/{student_id}/extend",
    response_model=ManualExtensionResponse,
    status_code=status.HTTP_200_OK,
)
async def extend_now(
    student_id: str,
    service: AutoExtensionService = Depends(get_auto_extension_service),
) -> ManualExtensionResponse:
    try:
        await service.extend_now(student_id)
        return ManualExtensionResponse(student_id=student_id, extended=True)
    except NoHeldSeatError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except ExtensionFailedError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(exc),
        ) from exc
