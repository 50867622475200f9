"""HTTP calls with exponential backoff for an unreliable, high-latency network.

request_with_retry() wraps a single httpx request. Transport errors are always
retried; responses are retried only when the caller's predicate says so.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from capture_processor.utils.errors import TransientNetworkError
from capture_processor.utils.retry import backoff_delays, with_jitter

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 9  # 10 attempts in total
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0
DEFAULT_JITTER = 0.2
RATE_LIMIT_STATUS = 429


def retry_on_server_error(response: httpx.Response) -> bool:
    """Default predicate: retry any 5xx response."""
    return response.status_code >= 500


def retry_on_transient(response: httpx.Response) -> bool:
    """Retry 5xx responses and rate limiting."""
    return (
        response.status_code >= 500
        or response.status_code == RATE_LIMIT_STATUS
    )


def _short_url(url: str) -> str:
    return url if len(url) <= 80 else f"{url[:80]}..."


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    retry_on: Callable[[httpx.Response], bool] = retry_on_server_error,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
    **kwargs: Any,
) -> httpx.Response:
    """Send an HTTP request, retrying transient failures with backoff.

    Args:
        client: Shared AsyncClient used for the request.
        method: HTTP method.
        url: Target URL.
        retry_on: Predicate deciding whether a received response is retried.
        max_retries: Retries after the first attempt.
        base_delay: Delay in seconds before the first retry.
        max_delay: Cap for a single delay.
        jitter: Maximum random seconds added to each delay.
        **kwargs: Passed through to client.request().

    Returns:
        The final response. When retries run out on a retryable status the
        last response is returned for the caller to inspect.

    Raises:
        TransientNetworkError: If every attempt failed at the transport level.
    """
    delays = backoff_delays(base_delay, max_delay)
    attempts = max_retries + 1
    last_error: httpx.TransportError | None = None

    for attempt in range(attempts):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            last_error = exc
            if attempt >= max_retries:
                logger.error(
                    "All %d attempts failed: %s - %s",
                    attempts,
                    _short_url(url),
                    exc,
                )
                break
            delay = with_jitter(next(delays), jitter)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs: %s",
                attempt + 1,
                attempts,
                exc,
                delay,
                _short_url(url),
            )
            await asyncio.sleep(delay)
            continue

        if (
            not response.is_success
            and retry_on(response)
            and attempt < max_retries
        ):
            delay = with_jitter(next(delays), jitter)
            logger.warning(
                "Attempt %d/%d failed (HTTP %d), retrying in %.2fs: %s",
                attempt + 1,
                attempts,
                response.status_code,
                delay,
                _short_url(url),
            )
            await asyncio.sleep(delay)
            continue

        if attempt > 0:
            logger.warning(
                "Success after %d attempts: %s", attempt + 1, _short_url(url)
            )
        return response

    raise TransientNetworkError(
        f"{method} {_short_url(url)} failed after {attempts} attempts: {last_error}"
    ) from last_error
