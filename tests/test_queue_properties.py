from __future__ import annotations

import asyncio
import random
import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from fakes import ManualClock, ScriptedAdapter, build_test_settings
from seatflow.domain.constraints import can_transition
from seatflow.domain.models import RequestStatus, RequestType
from seatflow.repository.data_repository import DataRepository
from seatflow.services.queue_service import (
    DuplicateActiveRequestError,
    RequestNotCancelableError,
    ReservationQueueService,
)


ROOMS = ("A", "B", "C")


class InvariantCheckingAdapter(ScriptedAdapter):
    """Records the PROCESSING count of the room at every reserve call."""

    def __init__(self, repository: DataRepository, rng: random.Random) -> None:
        super().__init__()
        self._repository = repository
        self._rng = rng
        self.observed_in_flight: list[int] = []

    async def reserve(self, student_id, room, seat):
        self.observed_in_flight.append(
            self._repository.count_requests(status=RequestStatus.PROCESSING, room=room)
        )
        self.reserve_script.append(self._rng.choice(["ok", "transient", "permanent", "error"]))
        await asyncio.sleep(0)
        return await super().reserve(student_id, room, seat)


def _assert_waiting_order(repository: DataRepository, room: str) -> None:
    waiting = repository.list_requests_for_room(room, status=RequestStatus.WAITING)
    by_position = sorted(waiting, key=lambda item: item.queue_position)
    by_rank = sorted(waiting, key=lambda item: (item.priority, item.request_id))
    assert [item.request_id for item in by_position] == [item.request_id for item in by_rank]
    assert [item.queue_position for item in by_position] == list(range(len(waiting)))


def _assert_single_processing(repository: DataRepository) -> None:
    for room in ROOMS:
        assert repository.count_requests(status=RequestStatus.PROCESSING, room=room) <= 1


def test_concurrent_drains_never_run_two_attempts_per_room(tmp_path):
    rng = random.Random(7)
    settings = build_test_settings(tmp_path, "properties.db", queue_max_retries_seat=3)
    repository = DataRepository(settings)
    repository.initialize_database()
    adapter = InvariantCheckingAdapter(repository, rng)
    clock = ManualClock()
    service = ReservationQueueService(
        adapter=adapter, repository=repository, settings=settings, clock=clock
    )

    for index in range(30):
        room = rng.choice(ROOMS)
        try:
            service.enqueue(f"student-{index}", RequestType.SEAT, room, str(rng.randint(1, 40)))
        except DuplicateActiveRequestError:
            pass

    async def tick() -> None:
        await asyncio.gather(*(service.drain_room(room) for room in ROOMS for _ in range(3)))

    for _ in range(15):
        asyncio.run(tick())
        _assert_single_processing(repository)
        clock.advance(seconds=settings.queue_backoff_cap_seconds)

    assert adapter.observed_in_flight
    assert all(count == 1 for count in adapter.observed_in_flight)
    for room in ROOMS:
        for request in repository.list_requests_for_room(room):
            assert request.retry_count <= request.max_retries
            if request.status is RequestStatus.FAILED and request.retry_count == request.max_retries:
                assert not request.will_retry


def test_threaded_schedulers_share_one_room_safely(tmp_path):
    settings = build_test_settings(tmp_path, "threads.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    clock = ManualClock()
    adapters = [InvariantCheckingAdapter(repository, random.Random(seed)) for seed in range(4)]
    services = [
        ReservationQueueService(adapter=adapter, repository=repository, settings=settings, clock=clock)
        for adapter in adapters
    ]
    for index in range(20):
        services[0].enqueue(f"student-{index}", RequestType.SEAT, "A", str(index))

    def run(service: ReservationQueueService) -> None:
        for _ in range(5):
            asyncio.run(service.drain_room("A"))

    for _ in range(4):
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(run, services))
        _assert_single_processing(repository)
        clock.advance(seconds=settings.queue_backoff_cap_seconds)

    observed = [count for adapter in adapters for count in adapter.observed_in_flight]
    assert observed
    assert all(count == 1 for count in observed)


def test_random_enqueue_and_cancel_preserve_queue_order(tmp_path):
    rng = random.Random(2026)
    settings = build_test_settings(tmp_path, "order.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    service = ReservationQueueService(
        adapter=ScriptedAdapter(), repository=repository, settings=settings, clock=ManualClock()
    )
    created = []

    for step in range(120):
        if created and rng.random() < 0.35:
            victim = rng.choice(created)
            try:
                service.cancel(victim.request_id, victim.student_id)
            except RequestNotCancelableError:
                pass
        else:
            request_type = rng.choice([RequestType.SEAT, RequestType.EMPTY_SEAT_WAIT])
            seat = str(rng.randint(1, 9)) if request_type is RequestType.SEAT else None
            try:
                created.append(
                    service.enqueue(f"student-{step}", request_type, rng.choice(ROOMS), seat)
                )
            except DuplicateActiveRequestError:
                pass
        for room in ROOMS:
            _assert_waiting_order(repository, room)


def _force_status(repository: DataRepository, request_id: int, status: RequestStatus) -> None:
    connection = sqlite3.connect(repository.database_path)
    try:
        with connection:
            connection.execute(
                "UPDATE ReservationRequests SET status = ? WHERE id = ?;",
                (status.value, request_id),
            )
    finally:
        connection.close()


@pytest.mark.parametrize("source", list(RequestStatus))
def test_repository_transitions_match_transition_table(tmp_path, source):
    repository = DataRepository(build_test_settings(tmp_path, "transitions.db"))
    repository.initialize_database()
    now = ManualClock().now
    attempts = {
        RequestStatus.PROCESSING: lambda request: repository.claim_next_request(request.room, now)
        is not None,
        RequestStatus.COMPLETED: lambda request: repository.complete_request(request.request_id, now),
        RequestStatus.FAILED: lambda request: repository.fail_request(
            request.request_id, "portal error", now
        ),
        RequestStatus.WAITING: lambda request: repository.requeue_request(
            request.request_id, 1, now, "portal busy", now
        ),
        RequestStatus.CANCELED: lambda request: repository.cancel_request(request.request_id, now)
        is not None,
    }
    assert set(attempts) == set(RequestStatus)

    for index, (target, attempt) in enumerate(attempts.items()):
        request = repository.create_request(
            student_id=f"student-{index}",
            request_type=RequestType.SEAT,
            room=f"R{index}",
            seat="1",
            priority=2,
            auto_return_current=False,
            max_retries=3,
            scheduled_at=now,
            now=now,
        )
        _force_status(repository, request.request_id, source)

        assert attempt(request) is can_transition(source, target), (source.value, target.value)
