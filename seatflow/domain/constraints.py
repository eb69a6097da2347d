"""Domain-level rules for request transitions and policy validation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Optional

from seatflow.domain.models import RequestStatus, TimeRestriction


ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.WAITING: frozenset({RequestStatus.PROCESSING, RequestStatus.CANCELED}),
    RequestStatus.PROCESSING: frozenset(
        {
            RequestStatus.WAITING,
            RequestStatus.COMPLETED,
            RequestStatus.FAILED,
            RequestStatus.CANCELED,
        }
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.FAILED: frozenset(),
    RequestStatus.CANCELED: frozenset(),
}


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def source_statuses(target: RequestStatus) -> tuple[RequestStatus, ...]:
    """Statuses a request may be in for a move to ``target`` to be allowed."""
    return tuple(status for status in RequestStatus if can_transition(status, target))


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    backoff_base_seconds: float
    backoff_cap_seconds: float


def validate_retry_policy(policy: RetryPolicy) -> None:
    if policy.max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    if policy.backoff_base_seconds <= 0:
        raise ValueError("backoff_base_seconds must be > 0")
    if policy.backoff_cap_seconds < policy.backoff_base_seconds:
        raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")


def backoff_seconds(policy: RetryPolicy, retry_count: int) -> float:
    """Delay before the next attempt after ``retry_count`` earlier retries."""
    exponent = min(max(retry_count, 0), 32)
    return min(policy.backoff_cap_seconds, policy.backoff_base_seconds * (2 ** exponent))


@dataclass(frozen=True)
class ExtensionPolicy:
    trigger_minutes_before: int
    max_auto_extensions: int
    time_restriction: TimeRestriction
    start_time: Optional[time]
    end_time: Optional[time]


def validate_extension_policy(policy: ExtensionPolicy) -> None:
    if policy.trigger_minutes_before <= 0:
        raise ValueError("trigger_minutes_before must be > 0")
    if policy.trigger_minutes_before > 24 * 60:
        raise ValueError("trigger_minutes_before must be at most one day")
    if policy.max_auto_extensions < 0:
        raise ValueError("max_auto_extensions must be >= 0")
    if (policy.start_time is None) != (policy.end_time is None):
        raise ValueError("start_time and end_time must be set together")
    if policy.start_time is not None and policy.end_time is not None:
        if policy.start_time >= policy.end_time:
            raise ValueError("start_time must be earlier than end_time")


def validate_prediction_weights(weights: tuple[float, ...], levels: int) -> None:
    if len(weights) != levels:
        raise ValueError(f"expected {levels} confidence weights, got {len(weights)}")
    if any(not 0.0 <= weight <= 1.0 for weight in weights):
        raise ValueError("confidence weights must be within [0, 1]")
    if any(later > earlier for earlier, later in zip(weights, weights[1:])):
        raise ValueError("confidence weights must not increase as keys are relaxed")
