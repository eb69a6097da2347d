"""HTTP controller layer for seat vacancy prediction."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from seatflow.controllers.dependencies import get_prediction_service
from seatflow.domain.models import SurvivalPredictionResult
from seatflow.services.prediction_service import (
    PredictionValidationError,
    VacancyPredictionService,
)
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/predictions", tags=["prediction"])


class ProbabilityBandResponse(BaseModel):
    within_minutes: int = Field(gt=0)
    probability: float = Field(ge=0.0, le=1.0)


class SurvivalPointResponse(BaseModel):
    minutes_from_now: int = Field(ge=0)
    survival_probability: float = Field(ge=0.0, le=1.0)


class SegmentResponse(BaseModel):
    period_type: str
    start_hour_bucket: str
    day_type: str
    room: str | None


class VacancyPredictionResponse(BaseModel):
    """Output DTO constrained to probability bounds."""

    room: str
    seat: str
    currently_occupied: bool
    occupied_since: datetime | None
    elapsed_minutes: float = Field(ge=0.0)
    median_remaining_minutes: float = Field(ge=0.0)
    q25_remaining_minutes: float = Field(ge=0.0)
    q75_remaining_minutes: float = Field(ge=0.0)
    probability_bands: list[ProbabilityBandResponse]
    confidence: float = Field(ge=0.0, le=1.0)
    segment: SegmentResponse
    sample_size: int = Field(ge=0)
    fallback_level: int = Field(ge=0)
    message: str
    survival_curve: list[SurvivalPointResponse] | None = None


def to_response(result: SurvivalPredictionResult) -> VacancyPredictionResponse:
    return VacancyPredictionResponse(
        room=result.room,
        seat=result.seat,
        currently_occupied=result.currently_occupied,
        occupied_since=result.occupied_since,
        elapsed_minutes=result.elapsed_minutes,
        median_remaining_minutes=result.median_remaining_minutes,
        q25_remaining_minutes=result.q25_remaining_minutes,
        q75_remaining_minutes=result.q75_remaining_minutes,
        probability_bands=[
            ProbabilityBandResponse(
                within_minutes=band.within_minutes,
                probability=band.probability,
            )
            for band in result.probability_bands
        ],
        confidence=result.confidence,
        segment=SegmentResponse(**result.segment.to_dict()),
        sample_size=result.sample_size,
        fallback_level=result.fallback_level,
        message=result.message,
        survival_curve=(
            [
                SurvivalPointResponse(
                    minutes_from_now=point.minutes_from_now,
                    survival_probability=point.survival_probability,
                )
                for point in result.survival_curve
            ]
            if result.survival_curve is not None
            else None
        ),
    )


@router.get(
    "/{room}/{seat}",
    response_model=VacancyPredictionResponse,
    status_code=status.HTTP_200_OK,
)
async def predict_vacancy(
    room: str,
    seat: str,
    include_curve: bool = False,
    service: VacancyPredictionService = Depends(get_prediction_service),
) -> VacancyPredictionResponse:
    """Estimate when an occupied seat frees up; vacant seats answer immediately."""
    try:
        return to_response(service.predict(room=room, seat=seat, include_curve=include_curve))
    except PredictionValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected prediction failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate prediction",
        ) from exc
