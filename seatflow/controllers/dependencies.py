"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from seatflow.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from seatflow.services.auto_extension_service import AutoExtensionService
from seatflow.services.calendar_service import CalendarService
from seatflow.services.driver_service import SchedulerDriver
from seatflow.services.prediction_service import VacancyPredictionService
from seatflow.services.queue_service import ReservationQueueService
from seatflow.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _state_service(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_queue_service(request: Request) -> ReservationQueueService:
    return _state_service(request, "queue_service", "Queue service")


def get_prediction_service(request: Request) -> VacancyPredictionService:
    return _state_service(request, "prediction_service", "Prediction service")


def get_auto_extension_service(request: Request) -> AutoExtensionService:
    return _state_service(request, "auto_extension_service", "Auto-extension service")


def get_calendar_service(request: Request) -> CalendarService:
    return _state_service(request, "calendar_service", "Calendar service")


def get_driver(request: Request) -> SchedulerDriver:
    return _state_service(request, "driver", "Scheduler driver")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> None:
    if not auth_service.auth_enabled:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header with Bearer token is required",
        )
    try:
        auth_service.validate_bearer_token(credentials.credentials)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
