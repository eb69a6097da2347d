"""Per-student auto-extension rule engine."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, time, timedelta
from typing import Any, Dict, Optional

from seatflow.domain.constraints import ExtensionPolicy, validate_extension_policy
from seatflow.domain.models import AutoExtensionConfig, DayType, TimeRestriction
from seatflow.repository.data_repository import DataRepository
from seatflow.services.adapter import (
    AdapterError,
    SeatAdapter,
    classify_failure,
    result_to_error,
)
from seatflow.services.student_locks import StudentLocks
from seatflow.utils.clock import Clock, minutes_between, to_local, utc_now
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


class AutoExtensionError(Exception):
    """Base exception for auto-extension workflow failures."""


class ConfigInvalidError(AutoExtensionError):
    """Raised when a submitted extension policy is malformed."""


class ExtensionFailedError(AutoExtensionError):
    """Raised when a manual extension is rejected by the seat portal."""


class NoHeldSeatError(AutoExtensionError):
    """Raised when a manual extension is requested without a held seat."""


@dataclass
class ExtensionTickSummary:
    evaluated: int = 0
    extended: int = 0
    skipped: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "evaluated": self.evaluated,
            "extended": self.extended,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class AutoExtensionService:
    """Evaluates enabled configs and extends seats close to their end."""

    def __init__(
        self,
        adapter: SeatAdapter,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
        student_locks: Optional[StudentLocks] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._adapter = adapter
        self._clock = clock
        self._student_locks = student_locks or StudentLocks()

    def default_config(self, student_id: str) -> AutoExtensionConfig:
        return AutoExtensionConfig(
            student_id=student_id,
            is_enabled=False,
            trigger_minutes_before=self._settings.auto_extension_trigger_minutes,
            max_auto_extensions=self._settings.auto_extension_max_per_day,
            current_extension_count=0,
            last_reset_date=None,
            time_restriction=TimeRestriction.ALL_TIMES,
            start_time=None,
            end_time=None,
            auto_return_on_empty_reservation=False,
            last_extended_at=None,
        )

    def get_config(self, student_id: str) -> AutoExtensionConfig:
        stored = self._repository.get_auto_extension_config(student_id)
        return stored if stored is not None else self.default_config(student_id)

    def update_config(
        self,
        student_id: str,
        is_enabled: bool,
        trigger_minutes_before: Optional[int] = None,
        max_auto_extensions: Optional[int] = None,
        time_restriction: TimeRestriction = TimeRestriction.ALL_TIMES,
        start_time: Optional[time] = None,
        end_time: Optional[time] = None,
        auto_return_on_empty_reservation: bool = False,
    ) -> AutoExtensionConfig:
        """Validate and store a student's policy; counters are left untouched."""
        if not student_id or not student_id.strip():
            raise ConfigInvalidError("student_id must be non-empty")
        current = self.get_config(student_id)
        candidate = replace(
            current,
            is_enabled=is_enabled,
            trigger_minutes_before=(
                trigger_minutes_before
                if trigger_minutes_before is not None
                else current.trigger_minutes_before
            ),
            max_auto_extensions=(
                max_auto_extensions
                if max_auto_extensions is not None
                else current.max_auto_extensions
            ),
            time_restriction=time_restriction,
            start_time=start_time,
            end_time=end_time,
            auto_return_on_empty_reservation=auto_return_on_empty_reservation,
        )
        try:
            validate_extension_policy(
                ExtensionPolicy(
                    trigger_minutes_before=candidate.trigger_minutes_before,
                    max_auto_extensions=candidate.max_auto_extensions,
                    time_restriction=candidate.time_restriction,
                    start_time=candidate.start_time,
                    end_time=candidate.end_time,
                )
            )
        except ValueError as exc:
            raise ConfigInvalidError(str(exc)) from exc

        saved = self._repository.save_auto_extension_config(candidate)
        logger.info(
            "Auto-extension config saved | student_id=%s | enabled=%s | trigger=%s | max=%s",
            student_id,
            saved.is_enabled,
            saved.trigger_minutes_before,
            saved.max_auto_extensions,
        )
        return saved

    def _reset_if_needed(self, config: AutoExtensionConfig, now: datetime) -> AutoExtensionConfig:
        today = to_local(now, self._settings.timezone).date()
        if config.last_reset_date == today:
            return config
        if self._repository.reset_extension_count(config.student_id, today):
            logger.info(
                "Daily extension count reset | student_id=%s | date=%s",
                config.student_id,
                today,
            )
        refreshed = self._repository.get_auto_extension_config(config.student_id)
        return refreshed if refreshed is not None else config

    def stats(self, student_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock()
        config = self._repository.get_auto_extension_config(student_id)
        if config is None:
            config = self.default_config(student_id)
        elif config.last_reset_date != to_local(now, self._settings.timezone).date():
            # Read-only view; the stored counter is reset by the next evaluation.
            config = replace(config, current_extension_count=0)
        return {
            "student_id": student_id,
            "is_enabled": config.is_enabled,
            "current_extension_count": config.current_extension_count,
            "max_auto_extensions": config.max_auto_extensions,
            "remaining_extensions": config.remaining_extensions,
            "last_extended_at": config.last_extended_at,
            "last_reset_date": config.last_reset_date,
        }

    def _time_allowed(self, config: AutoExtensionConfig, now: datetime) -> bool:
        local_now = to_local(now, self._settings.timezone)
        day_type = DayType.from_weekday(local_now.weekday())
        if config.time_restriction is TimeRestriction.WEEKDAYS and day_type is DayType.WEEKEND:
            return False
        if config.time_restriction is TimeRestriction.WEEKENDS and day_type is DayType.WEEKDAY:
            return False
        if config.start_time is not None and config.end_time is not None:
            clock_time = local_now.time().replace(tzinfo=None)
            if not config.start_time <= clock_time < config.end_time:
                return False
        return True

    async def _call_extend(self, student_id: str) -> None:
        try:
            result = await asyncio.wait_for(
                self._adapter.extend(student_id),
                timeout=self._settings.adapter_timeout_seconds,
            )
        except Exception as exc:
            raise classify_failure(exc) from exc
        if not result.success:
            raise result_to_error(result)

    async def evaluate(self, config: AutoExtensionConfig, now: datetime) -> str:
        """Evaluate one config and return the outcome name."""
        config = self._reset_if_needed(config, now)
        student_id = config.student_id

        if config.current_extension_count >= config.max_auto_extensions:
            return "cap_reached"
        if not self._time_allowed(config, now):
            return "outside_window"
        if config.last_extended_at is not None and now - config.last_extended_at < timedelta(
            minutes=self._settings.auto_extension_cooldown_minutes
        ):
            return "cooldown"

        try:
            held = await asyncio.wait_for(
                self._adapter.current_seat(student_id),
                timeout=self._settings.adapter_timeout_seconds,
            )
        except Exception as exc:
            error = classify_failure(exc)
            logger.warning(
                "Held-seat lookup failed | student_id=%s | kind=%s | reason=%s",
                student_id,
                type(error).__name__,
                error,
            )
            return "failed"

        if held is None:
            return "no_seat"
        if held.end_time is None:
            return "unknown_end"

        remaining = minutes_between(now, held.end_time)
        if remaining <= 0:
            return "expired"
        if remaining > config.trigger_minutes_before:
            return "not_due"

        try:
            await self._call_extend(student_id)
        except AdapterError as exc:
            logger.warning(
                "Auto-extension failed | student_id=%s | kind=%s | reason=%s | next=re-evaluated next tick",
                student_id,
                type(exc).__name__,
                exc,
            )
            return "failed"

        if not self._repository.record_extension(student_id, now):
            logger.warning(
                "Extension succeeded but daily cap already reached | student_id=%s",
                student_id,
            )
        logger.info(
            "Seat auto-extended | student_id=%s | room=%s | seat=%s | remaining_minutes=%.1f",
            student_id,
            held.room,
            held.seat,
            remaining,
        )
        return "extended"

    async def process_all(self, now: Optional[datetime] = None) -> ExtensionTickSummary:
        now = now or self._clock()
        summary = ExtensionTickSummary()
        for config in self._repository.list_enabled_auto_extension_configs():
            summary.evaluated += 1
            async with self._student_locks.for_student(config.student_id):
                outcome = await self.evaluate(config, now)
            if outcome == "extended":
                summary.extended += 1
            elif outcome == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1
        if summary.evaluated:
            logger.info("Auto-extension pass finished | %s", summary.to_dict())
        return summary

    async def extend_now(self, student_id: str) -> None:
        """Manual extension; does not count against the daily auto cap."""
        async with self._student_locks.for_student(student_id):
            try:
                held = await asyncio.wait_for(
                    self._adapter.current_seat(student_id),
                    timeout=self._settings.adapter_timeout_seconds,
                )
            except Exception as exc:
                raise ExtensionFailedError(str(classify_failure(exc))) from exc
            if held is None:
                raise NoHeldSeatError(f"student {student_id} holds no seat")
            try:
                await self._call_extend(student_id)
            except AdapterError as exc:
                raise ExtensionFailedError(str(exc)) from exc
        logger.info("Manual extension | student_id=%s | room=%s | seat=%s", student_id, held.room, held.seat)
