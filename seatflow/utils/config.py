"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional


_ENV_PREFIX = "SEATFLOW_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name, "1" if default else "0").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_tuple(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str = "Seatflow Reading Room Scheduler"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    admin_token: Optional[str] = None
    admin_session_ttl_minutes: int = 480
    database_path: Path = Path("data/seatflow.db")
    database_busy_timeout_seconds: float = 5.0
    timezone: str = "Asia/Seoul"

    queue_max_retries_seat: int = 5
    queue_max_retries_empty_seat: int = 240
    queue_backoff_base_seconds: float = 15.0
    queue_backoff_cap_seconds: float = 300.0
    queue_seat_priority: int = 2
    queue_empty_seat_priority: int = 1
    queue_cleanup_after_days: int = 7
    queue_stats_recent_completed: int = 100

    adapter_timeout_seconds: float = 10.0

    driver_enabled: bool = False
    driver_interval_seconds: float = 30.0
    monitored_rooms: tuple[str, ...] = ()

    auto_extension_trigger_minutes: int = 30
    auto_extension_max_per_day: int = 4
    auto_extension_cooldown_minutes: int = 10

    prediction_min_sample_size: int = 20
    prediction_target_sample_size: int = 200
    prediction_level_weights: tuple[float, ...] = (1.0, 0.85, 0.7, 0.55, 0.4)
    prediction_band_minutes: tuple[int, ...] = (15, 30, 60, 120, 180, 240)
    prediction_curve_interval_minutes: int = 15
    prediction_min_session_minutes: float = 5.0
    prediction_max_session_minutes: float = 1440.0
    prediction_default_session_minutes: float = 180.0
    prediction_cache_ttl_seconds: float = 6 * 60 * 60

    synthetic_random_seed: int = 42
    synthetic_seed_days: int = 28
    synthetic_rooms: tuple[str, ...] = field(default=("1", "2", "3"))
    synthetic_seats_per_room: int = 12
    synthetic_seed_on_startup: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process from ``SEATFLOW_*`` variables."""
    defaults = Settings()
    return Settings(
        app_name=_env("APP_NAME", defaults.app_name),
        app_version=_env("APP_VERSION", defaults.app_version),
        log_level=_env("LOG_LEVEL", defaults.log_level),
        admin_token=os.getenv("ADMIN_TOKEN") or os.getenv(f"{_ENV_PREFIX}ADMIN_TOKEN"),
        admin_session_ttl_minutes=_env_int(
            "ADMIN_SESSION_TTL_MINUTES", defaults.admin_session_ttl_minutes
        ),
        database_path=Path(_env("DATABASE_PATH", str(defaults.database_path))),
        database_busy_timeout_seconds=_env_float(
            "DATABASE_BUSY_TIMEOUT_SECONDS", defaults.database_busy_timeout_seconds
        ),
        timezone=_env("TIMEZONE", defaults.timezone),
        queue_max_retries_seat=_env_int(
            "QUEUE_MAX_RETRIES_SEAT", defaults.queue_max_retries_seat
        ),
        queue_max_retries_empty_seat=_env_int(
            "QUEUE_MAX_RETRIES_EMPTY_SEAT", defaults.queue_max_retries_empty_seat
        ),
        queue_backoff_base_seconds=_env_float(
            "QUEUE_BACKOFF_BASE_SECONDS", defaults.queue_backoff_base_seconds
        ),
        queue_backoff_cap_seconds=_env_float(
            "QUEUE_BACKOFF_CAP_SECONDS", defaults.queue_backoff_cap_seconds
        ),
        queue_seat_priority=_env_int("QUEUE_SEAT_PRIORITY", defaults.queue_seat_priority),
        queue_empty_seat_priority=_env_int(
            "QUEUE_EMPTY_SEAT_PRIORITY", defaults.queue_empty_seat_priority
        ),
        queue_cleanup_after_days=_env_int(
            "QUEUE_CLEANUP_AFTER_DAYS", defaults.queue_cleanup_after_days
        ),
        adapter_timeout_seconds=_env_float(
            "ADAPTER_TIMEOUT_SECONDS", defaults.adapter_timeout_seconds
        ),
        driver_enabled=_env_bool("DRIVER_ENABLED", defaults.driver_enabled),
        driver_interval_seconds=_env_float(
            "DRIVER_INTERVAL_SECONDS", defaults.driver_interval_seconds
        ),
        monitored_rooms=_env_tuple("MONITORED_ROOMS", defaults.monitored_rooms),
        auto_extension_trigger_minutes=_env_int(
            "AUTO_EXTENSION_TRIGGER_MINUTES", defaults.auto_extension_trigger_minutes
        ),
        auto_extension_max_per_day=_env_int(
            "AUTO_EXTENSION_MAX_PER_DAY", defaults.auto_extension_max_per_day
        ),
        auto_extension_cooldown_minutes=_env_int(
            "AUTO_EXTENSION_COOLDOWN_MINUTES", defaults.auto_extension_cooldown_minutes
        ),
        prediction_min_sample_size=_env_int(
            "PREDICTION_MIN_SAMPLE_SIZE", defaults.prediction_min_sample_size
        ),
        prediction_target_sample_size=_env_int(
            "PREDICTION_TARGET_SAMPLE_SIZE", defaults.prediction_target_sample_size
        ),
        prediction_default_session_minutes=_env_float(
            "PREDICTION_DEFAULT_SESSION_MINUTES",
            defaults.prediction_default_session_minutes,
        ),
        prediction_cache_ttl_seconds=_env_float(
            "PREDICTION_CACHE_TTL_SECONDS", defaults.prediction_cache_ttl_seconds
        ),
        synthetic_random_seed=_env_int(
            "SYNTHETIC_RANDOM_SEED", defaults.synthetic_random_seed
        ),
        synthetic_seed_days=_env_int("SYNTHETIC_SEED_DAYS", defaults.synthetic_seed_days),
        synthetic_rooms=_env_tuple("SYNTHETIC_ROOMS", defaults.synthetic_rooms),
        synthetic_seats_per_room=_env_int(
            "SYNTHETIC_SEATS_PER_ROOM", defaults.synthetic_seats_per_room
        ),
        synthetic_seed_on_startup=_env_bool(
            "SYNTHETIC_SEED_ON_STARTUP", defaults.synthetic_seed_on_startup
        ),
    )
