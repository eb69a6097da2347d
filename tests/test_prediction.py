from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from fakes import ManualClock, build_test_settings
from seatflow.domain.models import ALL, SeatEvent
from seatflow.repository.data_repository import DataRepository
from seatflow.services.prediction_service import (
    PredictionValidationError,
    VacancyPredictionService,
    confidence_label,
)


HISTORY_DAY = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
QUERY_START = datetime(2026, 3, 9, 10, 0, tzinfo=timezone.utc)


def _build_predictor(tmp_path, filename: str = "prediction.db", **overrides):
    settings = build_test_settings(tmp_path, filename, **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    clock = ManualClock(QUERY_START + timedelta(minutes=60))
    service = VacancyPredictionService(repository=repository, settings=settings, clock=clock)
    return service, repository, clock


def _seed_sessions(repository: DataRepository, room: str, durations, start: datetime = HISTORY_DAY) -> None:
    for index, minutes in enumerate(durations):
        seat = f"h{index}"
        repository.append_event(room, seat, SeatEvent.OCCUPIED, start)
        repository.append_event(room, seat, SeatEvent.VACATED, start + timedelta(minutes=float(minutes)))


def test_median_remaining_uses_conditional_survival(tmp_path):
    service, repository, _ = _build_predictor(tmp_path)
    durations = np.linspace(30, 150, 50)
    assert float(np.median(durations)) == pytest.approx(90.0)
    _seed_sessions(repository, "R", durations)
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S", include_curve=True)

    survivors = durations[durations > 60] - 60
    assert result.currently_occupied
    assert result.elapsed_minutes == pytest.approx(60.0)
    assert 0 < result.median_remaining_minutes < 90
    assert result.median_remaining_minutes == pytest.approx(float(np.median(survivors)), abs=0.01)
    assert result.q25_remaining_minutes <= result.median_remaining_minutes <= result.q75_remaining_minutes
    assert result.fallback_level == 0
    assert result.sample_size == 50
    assert result.segment.room == "R"
    assert result.segment.start_hour_bucket == "MORNING"
    assert result.confidence == pytest.approx(50 / 200, abs=1e-4)

    probabilities = [band.probability for band in result.probability_bands]
    assert [band.within_minutes for band in result.probability_bands] == [15, 30, 60, 120, 180, 240]
    assert probabilities == sorted(probabilities)
    assert probabilities[-1] == 1.0
    assert result.survival_curve[0].minutes_from_now == 0
    assert result.survival_curve[0].survival_probability == 1.0


def test_no_history_returns_default_with_zero_confidence(tmp_path):
    service, repository, _ = _build_predictor(tmp_path)
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S")

    assert result.confidence == 0.0
    assert result.sample_size == 0
    assert result.median_remaining_minutes == pytest.approx(180.0)
    assert result.q25_remaining_minutes < 180.0 < result.q75_remaining_minutes
    assert result.segment.period_type == ALL
    assert "No history" in result.message
    assert result.survival_curve is None


def test_vacant_seat_is_available_now(tmp_path):
    service, _, _ = _build_predictor(tmp_path)

    result = service.predict("R", "free")

    assert not result.currently_occupied
    assert result.median_remaining_minutes == 0.0
    assert result.confidence == 1.0
    assert all(band.probability == 1.0 for band in result.probability_bands)


def test_falls_back_to_network_segment_when_room_is_sparse(tmp_path):
    service, repository, _ = _build_predictor(tmp_path)
    _seed_sessions(repository, "other", [40 + i for i in range(25)])
    _seed_sessions(repository, "R", [50, 70])
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S")

    assert result.fallback_level == 1
    assert result.segment.room is None
    assert result.sample_size == 27
    assert result.confidence == pytest.approx(0.85 * 27 / 200, abs=1e-4)


def test_sparse_broadest_segment_is_used_with_low_confidence(tmp_path):
    service, repository, _ = _build_predictor(tmp_path)
    _seed_sessions(repository, "R", [80, 90, 100, 110, 120])
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S")

    assert result.fallback_level == 4
    assert result.sample_size == 5
    assert 0.0 < result.confidence < 0.05
    assert confidence_label(result.confidence) == "low"


def test_confidence_never_rises_as_keys_are_relaxed(tmp_path):
    service, _, _ = _build_predictor(tmp_path)

    for sample_size in (1, 20, 150, 200, 5000):
        scores = [service._confidence(level, sample_size) for level in range(5)]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= score <= 1.0 for score in scores)


def test_session_outlasting_all_history_may_free_any_moment(tmp_path):
    service, repository, clock = _build_predictor(tmp_path)
    _seed_sessions(repository, "R", [20 + i for i in range(30)])
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S")

    assert result.median_remaining_minutes == 0.0
    assert all(band.probability == 1.0 for band in result.probability_bands)
    assert "longer than usual" in result.message


def test_out_of_range_sessions_are_excluded(tmp_path):
    service, repository, _ = _build_predictor(tmp_path, prediction_min_sample_size=1)
    _seed_sessions(repository, "R", [2, 3, 100, 2000])
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)

    result = service.predict("R", "S")

    assert result.sample_size == 1
    assert result.median_remaining_minutes == pytest.approx(40.0)


def test_sample_cache_refreshes_on_ttl_or_request(tmp_path):
    service, repository, clock = _build_predictor(tmp_path, prediction_min_sample_size=1)
    _seed_sessions(repository, "R", [100])
    repository.append_event("R", "S", SeatEvent.OCCUPIED, QUERY_START)
    assert service.predict("R", "S").sample_size == 1

    _seed_sessions(repository, "R", [110, 120], start=HISTORY_DAY + timedelta(days=1))
    assert service.predict("R", "S").sample_size == 1

    assert service.refresh_cache() == 3
    assert service.predict("R", "S").sample_size == 3

    _seed_sessions(repository, "R", [130], start=HISTORY_DAY + timedelta(days=2))
    clock.advance(hours=7)
    assert service.predict("R", "S").sample_size == 4


def test_prediction_validation_errors(tmp_path):
    service, _, _ = _build_predictor(tmp_path)

    with pytest.raises(PredictionValidationError):
        service.predict("", "S")
    with pytest.raises(PredictionValidationError):
        service.predict("R", " ")
