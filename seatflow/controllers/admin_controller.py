"""Controller layer for operator endpoints guarded by the admin token."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from seatflow.controllers.dependencies import (
    get_auth_service,
    get_calendar_service,
    get_driver,
    get_prediction_service,
    get_queue_service,
    require_admin,
)
from seatflow.domain.models import PeriodType
from seatflow.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from seatflow.services.calendar_service import CalendarService, CalendarValidationError
from seatflow.services.driver_service import SchedulerDriver
from seatflow.services.prediction_service import VacancyPredictionService
from seatflow.services.queue_service import ReservationQueueService
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["admin"])


class LoginRequest(BaseModel):
    admin_token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TickResponse(BaseModel):
    skipped: bool
    recovered: list[int]
    extension: Optional[dict[str, int]]
    rooms: list[dict[str, Any]]
    events_ingested: int = Field(ge=0)


class CleanupResponse(BaseModel):
    deleted: int = Field(ge=0)


class AcademicPeriodRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    start_date: date
    end_date: date
    period_type: PeriodType
    is_active: bool = True
    description: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def validate_date_order(self) -> "AcademicPeriodRequest":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class AcademicPeriodResponse(BaseModel):
    id: int = Field(gt=0)
    name: str
    start_date: date
    end_date: date
    period_type: PeriodType
    is_active: bool


class RestampRequest(BaseModel):
    start_date: date
    end_date: date
    period_type: PeriodType


class RestampResponse(BaseModel):
    updated: int = Field(ge=0)


class CacheRefreshResponse(BaseModel):
    sessions_loaded: int = Field(ge=0)


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer = auth_service.login(payload.admin_token)
        return LoginResponse(access_token=bearer)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected login failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to login",
        ) from exc


@router.post(
    "/admin/tick",
    response_model=TickResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def run_tick(driver: SchedulerDriver = Depends(get_driver)) -> TickResponse:
    """Run one driver tick now; returns ``skipped`` when a tick is in progress."""
    try:
        summary = await driver.tick()
        return TickResponse(**summary.to_dict())
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected manual tick failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run scheduler tick",
        ) from exc


@router.post(
    "/admin/cleanup",
    response_model=CleanupResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def cleanup_requests(
    service: ReservationQueueService = Depends(get_queue_service),
) -> CleanupResponse:
    return CleanupResponse(deleted=service.cleanup())


@router.get(
    "/admin/periods",
    response_model=list[AcademicPeriodResponse],
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def list_periods(
    active_only: bool = True,
    service: CalendarService = Depends(get_calendar_service),
) -> list[AcademicPeriodResponse]:
    return [
        AcademicPeriodResponse(
            id=period.period_id,
            name=period.name,
            start_date=period.start_date,
            end_date=period.end_date,
            period_type=period.period_type,
            is_active=period.is_active,
        )
        for period in service.list_periods(active_only=active_only)
    ]


@router.post(
    "/admin/periods",
    response_model=AcademicPeriodResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_period(
    payload: AcademicPeriodRequest,
    service: CalendarService = Depends(get_calendar_service),
) -> AcademicPeriodResponse:
    try:
        period = service.create_period(
            name=payload.name,
            start_date=payload.start_date,
            end_date=payload.end_date,
            period_type=payload.period_type,
            is_active=payload.is_active,
            description=payload.description,
        )
    except CalendarValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return AcademicPeriodResponse(
        id=period.period_id,
        name=period.name,
        start_date=period.start_date,
        end_date=period.end_date,
        period_type=period.period_type,
        is_active=period.is_active,
    )


@router.post(
    "/admin/periods/restamp",
    response_model=RestampResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def restamp_events(
    payload: RestampRequest,
    service: CalendarService = Depends(get_calendar_service),
    prediction_service: VacancyPredictionService = Depends(get_prediction_service),
) -> RestampResponse:
    try:
        updated = service.restamp(payload.start_date, payload.end_date, payload.period_type)
    except CalendarValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    prediction_service.refresh_cache()
    return RestampResponse(updated=updated)


@router.post(
    "/admin/prediction-cache/refresh",
    response_model=CacheRefreshResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_admin)],
)
async def refresh_prediction_cache(
    service: VacancyPredictionService = Depends(get_prediction_service),
) -> CacheRefreshResponse:
    return CacheRefreshResponse(sessions_loaded=service.refresh_cache())
