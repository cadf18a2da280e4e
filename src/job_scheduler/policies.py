"""
Pure scheduling policies: retry backoff and recurrence arithmetic.
"""
from datetime import datetime, timedelta
from typing import Callable

DEFAULT_BACKOFF_BASE_SECONDS = 10
SECONDS_PER_DAY = 86400


def compute_backoff(retry_count: int, base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS) -> timedelta:
    """
    Delay before the next attempt of a job that has failed ``retry_count`` times.

    Grows as ``base_seconds * 2 ** retry_count``: 20s, 40s, 80s, ... with the default base.
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    return timedelta(seconds=base_seconds * (2 ** retry_count))


def backoff_policy(base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS) -> Callable[[int], timedelta]:
    return lambda retry_count: compute_backoff(retry_count, base_seconds)


def should_retry(retry_count: int, max_retries: int) -> bool:
    return retry_count < max_retries


def next_run_after(last_run_at: datetime, interval_seconds: int) -> datetime:
    return last_run_at + timedelta(seconds=interval_seconds)


def next_daily_run(now: datetime, hour: int = 0, minute: int = 0) -> datetime:
    """
    First occurrence of ``hour:minute`` strictly after ``now``, in ``now``'s timezone.
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be between 0 and 23, got {hour}")
    if not 0 <= minute <= 59:
        raise ValueError(f"minute must be between 0 and 59, got {minute}")
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate
