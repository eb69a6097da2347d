"""Domain models for seat queueing, auto-extension and vacancy prediction."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Optional


ALL = "ALL"


class PeriodType(str, Enum):
    NORMAL = "NORMAL"
    EXAM = "EXAM"
    VACATION = "VACATION"
    FINALS = "FINALS"


class DayType(str, Enum):
    WEEKDAY = "WEEKDAY"
    WEEKEND = "WEEKEND"

    @classmethod
    def from_weekday(cls, weekday: int) -> "DayType":
        return cls.WEEKEND if weekday >= 5 else cls.WEEKDAY


class HourBucket(str, Enum):
    """Coarse start-of-session bands used to group sessions by hour."""

    EARLY_MORNING = "EARLY_MORNING"
    MORNING = "MORNING"
    AFTERNOON = "AFTERNOON"
    EVENING = "EVENING"
    NIGHT = "NIGHT"

    @classmethod
    def from_hour(cls, hour: int) -> "HourBucket":
        if 5 <= hour < 9:
            return cls.EARLY_MORNING
        if 9 <= hour < 13:
            return cls.MORNING
        if 13 <= hour < 18:
            return cls.AFTERNOON
        if 18 <= hour < 22:
            return cls.EVENING
        return cls.NIGHT

    @property
    def hours(self) -> tuple[int, ...]:
        return tuple(hour for hour in range(24) if HourBucket.from_hour(hour) is self)


class SeatEvent(str, Enum):
    OCCUPIED = "OCCUPIED"
    VACATED = "VACATED"


class SeatStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    OCCUPIED = "OCCUPIED"
    UNAVAILABLE = "UNAVAILABLE"


class RequestType(str, Enum):
    SEAT = "SEAT"
    EMPTY_SEAT_WAIT = "EMPTY_SEAT_WAIT"


class RequestStatus(str, Enum):
    WAITING = "WAITING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.CANCELED}
)
ACTIVE_STATUSES = frozenset({RequestStatus.WAITING, RequestStatus.PROCESSING})


class TimeRestriction(str, Enum):
    ALL_TIMES = "ALL_TIMES"
    WEEKDAYS = "WEEKDAYS"
    WEEKENDS = "WEEKENDS"


@dataclass(frozen=True)
class OccupancySession:
    room: str
    seat: str
    start_time: datetime
    end_time: Optional[datetime]
    period_type: PeriodType
    day_type: DayType
    start_hour_bucket: int

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    @property
    def duration_minutes(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() / 60.0


@dataclass(frozen=True)
class SessionFilter:
    room: Optional[str] = None
    seat: Optional[str] = None
    period_type: Optional[PeriodType] = None
    day_type: Optional[DayType] = None
    hour_bucket: Optional[HourBucket] = None
    min_duration_minutes: Optional[float] = None
    max_duration_minutes: Optional[float] = None


@dataclass(frozen=True)
class AcademicPeriod:
    period_id: int
    name: str
    start_date: date
    end_date: date
    period_type: PeriodType
    is_active: bool

    def covers(self, target: date) -> bool:
        return self.is_active and self.start_date <= target <= self.end_date


@dataclass(frozen=True)
class ReservationRequest:
    request_id: int
    student_id: str
    request_type: RequestType
    room: str
    seat: Optional[str]
    status: RequestStatus
    queue_position: int
    priority: int
    auto_return_current: bool
    retry_count: int
    max_retries: int
    scheduled_at: datetime
    processed_at: Optional[datetime]
    error_message: Optional[str]
    will_retry: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class AutoExtensionConfig:
    student_id: str
    is_enabled: bool
    trigger_minutes_before: int
    max_auto_extensions: int
    current_extension_count: int
    last_reset_date: Optional[date]
    time_restriction: TimeRestriction
    start_time: Optional[time]
    end_time: Optional[time]
    auto_return_on_empty_reservation: bool
    last_extended_at: Optional[datetime]

    @property
    def remaining_extensions(self) -> int:
        return max(0, self.max_auto_extensions - self.current_extension_count)


@dataclass(frozen=True)
class SeatState:
    """One seat as reported by the portal's status poll."""

    room: str
    seat: str
    status: SeatStatus
    observed_at: datetime


@dataclass(frozen=True)
class HeldSeat:
    """The seat a student currently holds, with its scheduled end."""

    student_id: str
    room: str
    seat: str
    end_time: Optional[datetime]


@dataclass(frozen=True)
class AdapterResult:
    success: bool
    reason: str = ""
    retryable: bool = True


@dataclass(frozen=True)
class PredictionSegment:
    period_type: str
    start_hour_bucket: str
    day_type: str
    room: Optional[str] = None

    @property
    def key(self) -> str:
        parts = [self.period_type, self.start_hour_bucket, self.day_type]
        if self.room is not None:
            parts.append(self.room)
        return ":".join(parts)

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "period_type": self.period_type,
            "start_hour_bucket": self.start_hour_bucket,
            "day_type": self.day_type,
            "room": self.room,
        }


@dataclass(frozen=True)
class SurvivalPoint:
    minutes_from_now: int
    survival_probability: float


@dataclass(frozen=True)
class ProbabilityBand:
    within_minutes: int
    probability: float


@dataclass(frozen=True)
class SurvivalPredictionResult:
    room: str
    seat: str
    currently_occupied: bool
    elapsed_minutes: float
    median_remaining_minutes: float
    q25_remaining_minutes: float
    q75_remaining_minutes: float
    probability_bands: list[ProbabilityBand]
    confidence: float
    segment: PredictionSegment
    sample_size: int
    fallback_level: int
    message: str
    occupied_since: Optional[datetime] = None
    survival_curve: Optional[list[SurvivalPoint]] = field(default=None)
