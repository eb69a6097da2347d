"""FastAPI application bootstrap and lifecycle wiring."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from seatflow.controllers.admin_controller import router as admin_router
from seatflow.controllers.auto_extension_controller import router as auto_extension_router
from seatflow.controllers.prediction_controller import router as prediction_router
from seatflow.controllers.queue_controller import router as queue_router
from seatflow.repository.data_repository import DataRepository
from seatflow.services.adapter import SeatAdapter, SimulatedSeatAdapter
from seatflow.services.auth_service import AuthService
from seatflow.services.auto_extension_service import AutoExtensionService
from seatflow.services.calendar_service import CalendarService
from seatflow.services.driver_service import SchedulerDriver
from seatflow.services.ingestion_service import SnapshotIngestionService
from seatflow.services.prediction_service import VacancyPredictionService
from seatflow.services.queue_service import ReservationQueueService
from seatflow.services.student_locks import StudentLocks
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


def build_simulated_adapter(settings: Settings) -> SimulatedSeatAdapter:
    seats = [str(index) for index in range(1, settings.synthetic_seats_per_room + 1)]
    return SimulatedSeatAdapter(rooms={room: seats for room in settings.synthetic_rooms})


def create_app(
    settings: Optional[Settings] = None,
    adapter: Optional[SeatAdapter] = None,
) -> FastAPI:
    """Build the app with explicit startup lifecycle dependencies."""
    settings = settings or get_settings()
    adapter = adapter or build_simulated_adapter(settings)
    repository = DataRepository(settings)
    student_locks = StudentLocks()
    calendar_service = CalendarService(repository=repository, settings=settings)
    ingestion_service = SnapshotIngestionService(
        repository=repository,
        calendar_service=calendar_service,
        settings=settings,
    )
    prediction_service = VacancyPredictionService(
        repository=repository,
        calendar_service=calendar_service,
        settings=settings,
    )
    queue_service = ReservationQueueService(
        adapter=adapter,
        repository=repository,
        calendar_service=calendar_service,
        settings=settings,
        student_locks=student_locks,
    )
    auto_extension_service = AutoExtensionService(
        adapter=adapter,
        repository=repository,
        settings=settings,
        student_locks=student_locks,
    )
    driver = SchedulerDriver(
        adapter=adapter,
        queue_service=queue_service,
        auto_extension_service=auto_extension_service,
        ingestion_service=ingestion_service,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup(app)
        stop_event = asyncio.Event()
        driver_task: Optional[asyncio.Task] = None
        if settings.driver_enabled:
            driver_task = asyncio.create_task(driver.run_forever(stop_event))
        try:
            yield
        finally:
            stop_event.set()
            if driver_task is not None:
                await driver_task

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.include_router(queue_router)
    app.include_router(prediction_router)
    app.include_router(auto_extension_router)
    app.include_router(admin_router)

    app.state.settings = settings
    app.state.adapter = adapter
    app.state.repository = repository
    app.state.calendar_service = calendar_service
    app.state.ingestion_service = ingestion_service
    app.state.prediction_service = prediction_service
    app.state.queue_service = queue_service
    app.state.auto_extension_service = auto_extension_service
    app.state.driver = driver
    app.state.auth_service = auth_service

    return app


def startup(app: FastAPI) -> None:
    """Initialize schema and, when configured, seed synthetic history."""
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    repository.initialize_database()
    if settings.synthetic_seed_on_startup:
        repository.seed_synthetic_history()
    queue_service: ReservationQueueService = app.state.queue_service
    queue_service.recover_orphans()
    logger.info(
        "System startup completed | database=%s | driver_enabled=%s",
        repository.database_path,
        settings.driver_enabled,
    )


app = create_app()
