"""Tests for request transitions and policy validation rules."""

from __future__ import annotations

from datetime import time

import pytest

from seatflow.domain.constraints import (
    ExtensionPolicy,
    RetryPolicy,
    backoff_seconds,
    can_transition,
    source_statuses,
    validate_extension_policy,
    validate_prediction_weights,
    validate_retry_policy,
)
from seatflow.domain.models import RequestStatus, TERMINAL_STATUSES, TimeRestriction


def valid_extension(**overrides) -> ExtensionPolicy:
    """Return a valid baseline ExtensionPolicy, optionally overriding fields."""
    defaults = {
        "trigger_minutes_before": 30,
        "max_auto_extensions": 4,
        "time_restriction": TimeRestriction.ALL_TIMES,
        "start_time": None,
        "end_time": None,
    }
    defaults.update(overrides)
    return ExtensionPolicy(**defaults)


# --- Status transitions ---

def test_waiting_can_only_start_processing_or_cancel() -> None:
    assert can_transition(RequestStatus.WAITING, RequestStatus.PROCESSING)
    assert can_transition(RequestStatus.WAITING, RequestStatus.CANCELED)
    assert not can_transition(RequestStatus.WAITING, RequestStatus.COMPLETED)
    assert not can_transition(RequestStatus.WAITING, RequestStatus.FAILED)


def test_processing_may_requeue_or_finish() -> None:
    for target in (
        RequestStatus.WAITING,
        RequestStatus.COMPLETED,
        RequestStatus.FAILED,
        RequestStatus.CANCELED,
    ):
        assert can_transition(RequestStatus.PROCESSING, target)


def test_terminal_statuses_are_final() -> None:
    for current in TERMINAL_STATUSES:
        for target in RequestStatus:
            assert not can_transition(current, target)


def test_source_statuses_invert_the_transition_table() -> None:
    assert source_statuses(RequestStatus.PROCESSING) == (RequestStatus.WAITING,)
    assert source_statuses(RequestStatus.WAITING) == (RequestStatus.PROCESSING,)
    assert source_statuses(RequestStatus.COMPLETED) == (RequestStatus.PROCESSING,)
    assert set(source_statuses(RequestStatus.CANCELED)) == {
        RequestStatus.WAITING,
        RequestStatus.PROCESSING,
    }


# --- Retry policy ---

def test_backoff_doubles_until_cap() -> None:
    policy = RetryPolicy(max_retries=8, backoff_base_seconds=15, backoff_cap_seconds=300)

    delays = [backoff_seconds(policy, count) for count in range(7)]

    assert delays == [15, 30, 60, 120, 240, 300, 300]


def test_backoff_handles_huge_retry_counts() -> None:
    policy = RetryPolicy(max_retries=3, backoff_base_seconds=1, backoff_cap_seconds=60)
    assert backoff_seconds(policy, 10_000) == 60


@pytest.mark.parametrize(
    "policy",
    [
        RetryPolicy(max_retries=-1, backoff_base_seconds=15, backoff_cap_seconds=300),
        RetryPolicy(max_retries=3, backoff_base_seconds=0, backoff_cap_seconds=300),
        RetryPolicy(max_retries=3, backoff_base_seconds=30, backoff_cap_seconds=10),
    ],
)
def test_invalid_retry_policy_raises(policy: RetryPolicy) -> None:
    with pytest.raises(ValueError):
        validate_retry_policy(policy)


def test_zero_retries_is_allowed() -> None:
    validate_retry_policy(RetryPolicy(max_retries=0, backoff_base_seconds=1, backoff_cap_seconds=1))


# --- Extension policy ---

def test_valid_extension_policy_passes() -> None:
    validate_extension_policy(valid_extension())
    validate_extension_policy(valid_extension(start_time=time(9, 0), end_time=time(21, 0)))
    validate_extension_policy(valid_extension(max_auto_extensions=0))


def test_trigger_must_be_positive_and_within_a_day() -> None:
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(trigger_minutes_before=0))
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(trigger_minutes_before=24 * 60 + 1))


def test_negative_cap_raises() -> None:
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(max_auto_extensions=-1))


def test_window_bounds_must_be_paired_and_ordered() -> None:
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(start_time=time(9, 0)))
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(end_time=time(9, 0)))
    with pytest.raises(ValueError):
        validate_extension_policy(valid_extension(start_time=time(12, 0), end_time=time(12, 0)))


# --- Prediction weights ---

def test_prediction_weights_must_not_increase() -> None:
    validate_prediction_weights((1.0, 0.85, 0.7, 0.55, 0.4), 5)

    with pytest.raises(ValueError):
        validate_prediction_weights((1.0, 0.85, 0.9, 0.55, 0.4), 5)
    with pytest.raises(ValueError):
        validate_prediction_weights((1.0, 0.85, 0.7), 5)
    with pytest.raises(ValueError):
        validate_prediction_weights((1.2, 0.85, 0.7, 0.55, 0.4), 5)
