"""Business logic for survival-based seat vacancy prediction."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import Iterator, List, Optional

import numpy as np
import pandas as pd

from seatflow.domain.constraints import validate_prediction_weights
from seatflow.domain.models import (
    ALL,
    DayType,
    HourBucket,
    OccupancySession,
    PredictionSegment,
    ProbabilityBand,
    SessionFilter,
    SurvivalPoint,
    SurvivalPredictionResult,
)
from seatflow.repository.data_repository import DataRepository
from seatflow.services.calendar_service import CalendarService
from seatflow.utils.clock import Clock, minutes_between, to_local, utc_now
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)

_FALLBACK_LEVELS = 5
_FRAME_COLUMNS = ["room", "period_type", "hour_bucket", "day_type", "duration_minutes"]


class PredictionError(Exception):
    """Base exception for prediction workflow failures."""


class PredictionValidationError(PredictionError):
    """Raised when incoming prediction input is invalid."""


@dataclass(frozen=True)
class _Estimate:
    median: float
    q25: float
    q75: float
    bands: List[ProbabilityBand]
    curve: List[SurvivalPoint]


def confidence_label(confidence: float) -> str:
    if confidence >= 0.7:
        return "high"
    if confidence >= 0.4:
        return "medium"
    if confidence > 0.0:
        return "low"
    return "none"


class VacancyPredictionService:
    """Estimates remaining occupancy from closed sessions of similar segments.

    Segments are relaxed one key at a time (room, hour bucket, day type,
    period) until one holds enough closed sessions. The closed-session frame
    is cached for ``prediction_cache_ttl_seconds``.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        calendar_service: Optional[CalendarService] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._calendar = calendar_service or CalendarService(self._repository, self._settings)
        self._clock = clock
        self._cache_lock = RLock()
        self._frame: Optional[pd.DataFrame] = None
        self._frame_loaded_at: Optional[datetime] = None
        validate_prediction_weights(self._settings.prediction_level_weights, _FALLBACK_LEVELS)

    # ------------------------------------------------------------------
    # Session sample cache
    # ------------------------------------------------------------------

    def _load_frame(self) -> pd.DataFrame:
        sessions = self._repository.query_closed_sessions(
            SessionFilter(
                min_duration_minutes=self._settings.prediction_min_session_minutes,
                max_duration_minutes=self._settings.prediction_max_session_minutes,
            )
        )
        rows = [
            {
                "room": session.room,
                "period_type": session.period_type.value,
                "hour_bucket": HourBucket.from_hour(session.start_hour_bucket).value,
                "day_type": session.day_type.value,
                "duration_minutes": session.duration_minutes,
            }
            for session in sessions
        ]
        return pd.DataFrame(rows, columns=_FRAME_COLUMNS)

    def _sessions_frame(self) -> pd.DataFrame:
        now = self._clock()
        with self._cache_lock:
            expired = self._frame_loaded_at is None or (
                now - self._frame_loaded_at
                >= timedelta(seconds=self._settings.prediction_cache_ttl_seconds)
            )
            if self._frame is None or expired:
                self._frame = self._load_frame()
                self._frame_loaded_at = now
                logger.info("Session sample cache loaded | rows=%s", len(self._frame))
            return self._frame

    def refresh_cache(self) -> int:
        with self._cache_lock:
            self._frame = None
            self._frame_loaded_at = None
            return len(self._sessions_frame())

    # ------------------------------------------------------------------
    # Segment fallback
    # ------------------------------------------------------------------

    def _segment_chain(self, session: OccupancySession) -> Iterator[tuple[int, PredictionSegment]]:
        period = session.period_type.value
        bucket = HourBucket.from_hour(session.start_hour_bucket).value
        day = session.day_type.value
        yield 0, PredictionSegment(period, bucket, day, session.room)
        yield 1, PredictionSegment(period, bucket, day)
        yield 2, PredictionSegment(period, ALL, day)
        yield 3, PredictionSegment(period, ALL, ALL)
        yield 4, PredictionSegment(ALL, ALL, ALL)

    def _durations_for(self, frame: pd.DataFrame, segment: PredictionSegment) -> np.ndarray:
        mask = pd.Series(True, index=frame.index)
        if segment.room is not None:
            mask &= frame["room"] == segment.room
        if segment.period_type != ALL:
            mask &= frame["period_type"] == segment.period_type
        if segment.start_hour_bucket != ALL:
            mask &= frame["hour_bucket"] == segment.start_hour_bucket
        if segment.day_type != ALL:
            mask &= frame["day_type"] == segment.day_type
        return frame.loc[mask, "duration_minutes"].to_numpy(dtype=float)

    def _confidence(self, level: int, sample_size: int) -> float:
        weight = self._settings.prediction_level_weights[level]
        scale = min(1.0, sample_size / float(self._settings.prediction_target_sample_size))
        return float(np.clip(weight * scale, 0.0, 1.0))

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _curve_minutes(self) -> List[int]:
        horizon = max(self._settings.prediction_band_minutes)
        step = self._settings.prediction_curve_interval_minutes
        return list(range(0, horizon + step, step))

    def _empirical_estimate(self, durations: np.ndarray, elapsed: float) -> _Estimate:
        survivors = durations[durations > elapsed]
        if survivors.size == 0:
            # Already longer than every recorded session.
            return _Estimate(
                median=0.0,
                q25=0.0,
                q75=0.0,
                bands=[
                    ProbabilityBand(within_minutes=h, probability=1.0)
                    for h in self._settings.prediction_band_minutes
                ],
                curve=[
                    SurvivalPoint(minutes_from_now=m, survival_probability=0.0)
                    for m in self._curve_minutes()
                ],
            )

        remaining = survivors - elapsed
        q25, median, q75 = np.quantile(remaining, [0.25, 0.5, 0.75])
        bands = [
            ProbabilityBand(
                within_minutes=h,
                probability=round(float(np.mean(remaining <= h)), 4),
            )
            for h in self._settings.prediction_band_minutes
        ]
        curve = [
            SurvivalPoint(
                minutes_from_now=m,
                survival_probability=round(float(np.mean(remaining > m)), 4),
            )
            for m in self._curve_minutes()
        ]
        return _Estimate(
            median=round(float(median), 2),
            q25=round(float(q25), 2),
            q75=round(float(q75), 2),
            bands=bands,
            curve=curve,
        )

    def _default_estimate(self) -> _Estimate:
        """Exponential fallback whose median is the default session length."""
        median = self._settings.prediction_default_session_minutes
        rate = math.log(2.0) / median
        bands = [
            ProbabilityBand(within_minutes=h, probability=round(1.0 - math.exp(-rate * h), 4))
            for h in self._settings.prediction_band_minutes
        ]
        curve = [
            SurvivalPoint(minutes_from_now=m, survival_probability=round(math.exp(-rate * m), 4))
            for m in self._curve_minutes()
        ]
        return _Estimate(
            median=round(median, 2),
            q25=round(-math.log(0.75) / rate, 2),
            q75=round(-math.log(0.25) / rate, 2),
            bands=bands,
            curve=curve,
        )

    def _validate_inputs(self, room: str, seat: str) -> None:
        if not room or not room.strip():
            raise PredictionValidationError("room must be non-empty")
        if not seat or not seat.strip():
            raise PredictionValidationError("seat must be non-empty")

    def _vacant_result(self, room: str, seat: str, now: datetime) -> SurvivalPredictionResult:
        local_now = to_local(now, self._settings.timezone)
        segment = PredictionSegment(
            self._calendar.period_for(now).value,
            HourBucket.from_hour(local_now.hour).value,
            DayType.from_weekday(local_now.weekday()).value,
            room,
        )
        return SurvivalPredictionResult(
            room=room,
            seat=seat,
            currently_occupied=False,
            elapsed_minutes=0.0,
            median_remaining_minutes=0.0,
            q25_remaining_minutes=0.0,
            q75_remaining_minutes=0.0,
            probability_bands=[
                ProbabilityBand(within_minutes=h, probability=1.0)
                for h in self._settings.prediction_band_minutes
            ],
            confidence=1.0,
            segment=segment,
            sample_size=0,
            fallback_level=0,
            message="Seat is available now",
        )

    def predict(
        self,
        room: str,
        seat: str,
        include_curve: bool = False,
        now: Optional[datetime] = None,
    ) -> SurvivalPredictionResult:
        """Predict how long the seat's open session will keep it occupied.

        Insufficient data never raises; the result carries a lower confidence
        instead, down to 0 with the default estimate.
        """
        self._validate_inputs(room, seat)
        now = now or self._clock()

        session = self._repository.active_session(room, seat)
        if session is None:
            return self._vacant_result(room, seat, now)

        elapsed = max(0.0, minutes_between(session.start_time, now))
        frame = self._sessions_frame()
        min_sample = self._settings.prediction_min_sample_size

        chosen: Optional[tuple[int, PredictionSegment, np.ndarray]] = None
        broadest: Optional[tuple[int, PredictionSegment, np.ndarray]] = None
        for level, segment in self._segment_chain(session):
            durations = self._durations_for(frame, segment)
            broadest = (level, segment, durations)
            if durations.size >= min_sample:
                chosen = broadest
                break
            logger.debug(
                "Segment below minimum sample | segment=%s | n=%s | min=%s",
                segment.key,
                durations.size,
                min_sample,
            )
        if chosen is None and broadest is not None and broadest[2].size > 0:
            chosen = broadest

        if chosen is None:
            level = _FALLBACK_LEVELS - 1
            segment = broadest[1] if broadest is not None else PredictionSegment(ALL, ALL, ALL)
            sample_size = 0
            confidence = 0.0
            estimate = self._default_estimate()
        else:
            level, segment, durations = chosen
            sample_size = int(durations.size)
            confidence = self._confidence(level, sample_size)
            estimate = self._empirical_estimate(durations, elapsed)

        label = confidence_label(confidence)
        if sample_size == 0:
            message = (
                f"No history yet; assuming a typical {estimate.median:.0f} minute stay "
                f"({label} confidence)"
            )
        elif estimate.median <= 0.0:
            message = f"Occupied longer than usual; may free up any moment ({label} confidence)"
        else:
            message = (
                f"Likely free in about {estimate.median:.0f} minutes ({label} confidence)"
            )

        logger.info(
            "Vacancy predicted | room=%s | seat=%s | segment=%s | level=%s | n=%s | confidence=%.3f",
            room,
            seat,
            segment.key,
            level,
            sample_size,
            confidence,
        )
        return SurvivalPredictionResult(
            room=room,
            seat=seat,
            currently_occupied=True,
            elapsed_minutes=round(elapsed, 2),
            median_remaining_minutes=estimate.median,
            q25_remaining_minutes=estimate.q25,
            q75_remaining_minutes=estimate.q75,
            probability_bands=estimate.bands,
            confidence=round(confidence, 4),
            segment=segment,
            sample_size=sample_size,
            fallback_level=level,
            message=message,
            occupied_since=session.start_time,
            survival_curve=estimate.curve if include_curve else None,
        )
