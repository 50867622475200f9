"""Retry helpers with exponential backoff.

Delays follow base_delay * multiplier^attempt, capped at max_delay.
Supports transient vs permanent failure classification via retryable_exceptions.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> Iterator[float]:
    """Yield an endless sequence of non-decreasing, capped delays.

    With base_delay=1.0 and max_delay=10.0 the sequence is
    1, 2, 4, 8, 10, 10, ...
    """
    delay = min(base_delay, max_delay)
    while True:
        yield delay
        delay = min(delay * multiplier, max_delay)


def with_jitter(delay: float, max_jitter: float) -> float:
    """Add up to max_jitter seconds of random jitter to a delay."""
    if max_jitter <= 0:
        return delay
    return delay + random.uniform(0, max_jitter)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    multiplier: float = 2.0,
    jitter: float = 0.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    **kwargs: Any,
) -> T:
    """Await func(*args, **kwargs), retrying failures with backoff.

    Args:
        func: Coroutine function to call.
        max_retries: Maximum number of retry attempts after the first call.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound for any single delay.
        multiplier: Growth factor between delays. 1.0 gives a fixed delay.
        jitter: Maximum random seconds added to each delay.
        retryable_exceptions: Exception types eligible for retry.
            If None, every Exception is retried. Non-retryable exceptions
            are re-raised immediately with _retry_count attached.

    Returns:
        Whatever func returns on its first successful call.
    """
    delays = backoff_delays(base_delay, max_delay, multiplier)
    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            last_error = exc
            # Permanent failure: re-raise immediately
            if retryable_exceptions is not None and not isinstance(
                exc, retryable_exceptions
            ):
                exc._retry_count = attempt  # type: ignore[attr-defined]
                raise
            if attempt < max_retries:
                delay = with_jitter(next(delays), jitter)
                logger.warning(
                    "Retry %d/%d for %s after %.1fs: %s",
                    attempt + 1,
                    max_retries,
                    getattr(func, "__name__", repr(func)),
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
    # Exhausted all retries: attach retry count before raising
    last_error._retry_count = max_retries  # type: ignore[union-attr]
    raise last_error  # type: ignore[misc]
