#!/usr/bin/env python3
"""Validate local seatflow environment readiness.

Runs against a throwaway database so the configured one is never touched.
"""

from __future__ import annotations

import asyncio
import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Callable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from seatflow.domain.models import RequestStatus, RequestType, SeatEvent
from seatflow.repository.data_repository import DataRepository
from seatflow.services.adapter import SimulatedSeatAdapter
from seatflow.services.prediction_service import VacancyPredictionService
from seatflow.services.queue_service import ReservationQueueService
from seatflow.utils.clock import get_zone, utc_now
from seatflow.utils.config import Settings, get_settings

SEPARATOR_LINE = "=" * 44
REQUIRED_MODULES = ("fastapi", "uvicorn", "pydantic", "numpy", "pandas", "httpx", "pytest")


class CheckFailed(Exception):
    pass


def check_python() -> str:
    version = sys.version.split()[0]
    if sys.version_info < (3, 11):
        raise CheckFailed(f"Python >= 3.11 required, found {version}")
    return version


def check_modules() -> str:
    broken = []
    for module_name in REQUIRED_MODULES:
        try:
            importlib.import_module(module_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            broken.append(f"{module_name} ({exc})")
    if broken:
        raise CheckFailed("missing/unimportable -> " + "; ".join(broken))
    return "all importable"


def build_checks(settings: Settings, repository: DataRepository) -> list[tuple[str, Callable[[], str]]]:
    room = settings.synthetic_rooms[0]

    def timezone() -> str:
        get_zone(settings.timezone)
        return settings.timezone

    def database() -> str:
        repository.initialize_database()
        return str(repository.database_path.name)

    def history() -> str:
        seeded = repository.seed_synthetic_history()
        if seeded == 0 or seeded % 2:
            raise CheckFailed(f"expected an even, non-zero event count, got {seeded}")
        return f"{seeded} events, {len(repository.query_closed_sessions())} closed sessions"

    def prediction() -> str:
        now = utc_now()
        repository.append_event(
            room, "validation-seat", SeatEvent.OCCUPIED, now - timedelta(minutes=45)
        )
        result = VacancyPredictionService(repository=repository, settings=settings).predict(
            room=room, seat="validation-seat", now=now
        )
        if not 0.0 <= result.confidence <= 1.0:
            raise CheckFailed("confidence out of [0,1] bounds")
        return f"median={result.median_remaining_minutes:.1f}min confidence={result.confidence:.3f}"

    def queue_round_trip() -> str:
        queue = ReservationQueueService(
            adapter=SimulatedSeatAdapter(rooms={"validation": ["1", "2"]}),
            repository=repository,
            settings=settings,
        )
        request = queue.enqueue("validator", RequestType.SEAT, "validation", "2")
        asyncio.run(queue.drain_room("validation"))
        final = queue.get_request(request.request_id)
        if final.status is not RequestStatus.COMPLETED:
            raise CheckFailed(f"expected COMPLETED, got {final.status.value}")
        return "request completed against the simulated portal"

    return [
        ("Campus timezone", timezone),
        ("Database initialization", database),
        ("Synthetic history", history),
        ("Vacancy prediction", prediction),
        ("Queue round trip", queue_round_trip),
    ]


def run_check(name: str, check: Callable[[], str]) -> tuple[bool, str]:
    try:
        return True, f"[PASS] {name}: {check()}"
    except Exception as exc:
        return False, f"[FAIL] {name}: {exc}"


def main() -> int:
    temp_dir = tempfile.mkdtemp(prefix="seatflow-env-")
    try:
        settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "seatflow_validation.db",
            synthetic_seed_days=7,
        )
        checks = [("Python", check_python), ("Required packages", check_modules)]
        # Later checks build on the database the earlier ones created.
        checks += build_checks(settings, DataRepository(settings))
        outcomes = [run_check(name, check) for name, check in checks]
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Seatflow Environment Validation")
    print(SEPARATOR_LINE)
    for _, line in outcomes:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all(ok for ok, _ in outcomes):
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
