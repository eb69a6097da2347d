"""Time helpers shared by the scheduler, calendar and predictor."""

from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable
from zoneinfo import ZoneInfo


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@lru_cache(maxsize=8)
def get_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(value: datetime, zone_name: str) -> datetime:
    return ensure_utc(value).astimezone(get_zone(zone_name))


def minutes_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 60.0
