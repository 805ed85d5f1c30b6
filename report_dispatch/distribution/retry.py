"""Retry planner: backoff and eligibility after a failed delivery.

The n-th failure waits ``5 * n**2`` minutes (5m, 20m, 45m, ...).  No cap
is applied; ``max_retries`` bounds the number of attempts.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

_BACKOFF_UNIT_MINUTES = 5


@dataclass(frozen=True)
class RetryPlan:
    retry_count: int
    next_retry_at: datetime | None
    terminal: bool


def backoff_delay(retry_count: int) -> timedelta:
    """Return the wait before the next attempt after *retry_count* failures."""
    if retry_count < 1:
        raise ValueError(f"retry_count must be >= 1, got {retry_count}")
    return timedelta(minutes=_BACKOFF_UNIT_MINUTES * retry_count ** 2)


def plan_failure(retry_count: int, max_retries: int, now: datetime) -> RetryPlan:
    """Plan the entry state after one more failure.

    *retry_count* is the count before this failure.  The result never
    exceeds *max_retries*; once it reaches it the entry is terminal and
    ``next_retry_at`` is ``None``.
    """
    new_count = min(retry_count + 1, max_retries)
    if new_count < max_retries:
        return RetryPlan(
            retry_count=new_count,
            next_retry_at=now + backoff_delay(new_count),
            terminal=False,
        )
    return RetryPlan(retry_count=new_count, next_retry_at=None, terminal=True)
