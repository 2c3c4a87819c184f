"""Exponential backoff for calls to the sync endpoint."""
from __future__ import annotations

import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

_INITIAL_BACKOFF = 0.25
_MAX_BACKOFF = 32.0


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    initial_delay: float = _INITIAL_BACKOFF,
    max_delay: float = _MAX_BACKOFF,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` up to ``attempts`` times, doubling the pause each time.

    ``should_retry`` vetoes further attempts for errors that cannot improve
    by waiting; the last error is re-raised unchanged.
    """

    attempts = max(1, attempts)
    delay = initial_delay
    for attempt in range(attempts):
        try:
            return operation()
        except Exception as exc:
            if attempt == attempts - 1:
                raise
            if should_retry is not None and not should_retry(exc):
                raise
        sleep(delay)
        delay = min(delay * 2, max_delay)
    raise RuntimeError("retry_with_backoff exhausted without a result")


def backoff_delay(retry_count: int, *, base: float = 1.0, max_exponent: int = 6) -> float:
    """Seconds to wait before retrying a queued operation for the n-th time."""

    capped = min(max(retry_count, 1), max_exponent)
    return base * 2 ** (capped - 1)


__all__ = ["backoff_delay", "retry_with_backoff"]
