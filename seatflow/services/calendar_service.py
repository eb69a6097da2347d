"""Academic calendar lookups used to stamp occupancy events."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import List, Optional

from seatflow.domain.models import AcademicPeriod, PeriodType
from seatflow.repository.data_repository import DataRepository
from seatflow.utils.clock import get_zone, to_local
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


class CalendarError(Exception):
    """Base exception for calendar operations."""


class CalendarValidationError(CalendarError):
    """Raised when a period definition is malformed."""


class CalendarService:
    """Resolves the period type for a timestamp in the campus timezone."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def local_date(self, at: datetime) -> date:
        return to_local(at, self._settings.timezone).date()

    def period_for(self, at: datetime) -> PeriodType:
        """Latest active period covering the local date, NORMAL otherwise."""
        period = self._repository.find_period_for_date(self.local_date(at))
        return period.period_type if period is not None else PeriodType.NORMAL

    def create_period(
        self,
        name: str,
        start_date: date,
        end_date: date,
        period_type: PeriodType,
        is_active: bool = True,
        description: Optional[str] = None,
    ) -> AcademicPeriod:
        if not name.strip():
            raise CalendarValidationError("name must be non-empty")
        if start_date > end_date:
            raise CalendarValidationError("start_date must not be after end_date")
        period = self._repository.create_period(
            name=name.strip(),
            start_date=start_date,
            end_date=end_date,
            period_type=period_type,
            is_active=is_active,
            description=description,
        )
        logger.info(
            "Academic period created | period_id=%s | type=%s | start=%s | end=%s",
            period.period_id,
            period.period_type.value,
            period.start_date,
            period.end_date,
        )
        return period

    def list_periods(self, active_only: bool = True) -> List[AcademicPeriod]:
        return self._repository.list_periods(active_only=active_only)

    def restamp(self, start_date: date, end_date: date, period_type: PeriodType) -> int:
        """Re-classify stored events whose local date falls in the range."""
        if start_date > end_date:
            raise CalendarValidationError("start_date must not be after end_date")
        zone = get_zone(self._settings.timezone)
        start_at = datetime.combine(start_date, time.min, tzinfo=zone)
        end_at = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=zone)
        updated = self._repository.restamp_events(start_at, end_at, period_type)
        logger.info(
            "Events restamped | type=%s | start=%s | end=%s | updated=%s",
            period_type.value,
            start_date,
            end_date,
            updated,
        )
        return updated
