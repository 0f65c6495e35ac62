"""
Retry with exponential backoff for model invocations.

Only transient failures (timeouts, rate limits, upstream 5xx, dropped
connections) are retried; anything else is raised on the first attempt.
Every attempt, successful or not, is reported to on_attempt so the caller
can write one cost-ledger row per attempt.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import openai

log = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_TYPES = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    httpx.TimeoutException,
    httpx.NetworkError,
)

_TRANSIENT_MARKERS = (
    "econnreset", "econnrefused", "etimedout", "timeout", "timed out", "network",
    "rate limit", "rate_limit", "429", "500", "502", "503", "overloaded", "server_error",
)


def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception as worth retrying."""
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code == 429 or exc.status_code >= 500
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def retry_with_backoff(
    call: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    timeout: Optional[float] = None,
    on_attempt: Optional[Callable[[int, Optional[T], Optional[BaseException], int], None]] = None,
    label: str = "model call",
) -> T:
    """
    Await call() until it succeeds, fails permanently, or attempts run out.

    Args:
        call:          Zero-arg coroutine factory (a fresh coroutine per attempt)
        max_attempts:  Total attempts including the first
        initial_delay: Seconds before the first retry; doubles each retry
        timeout:       Per-attempt timeout in seconds (timeouts count as transient)
        on_attempt:    Callback(attempt, result, error, elapsed_ms) after every attempt
        label:         Used in log lines

    Returns:
        The first successful result

    Raises:
        The last error once retries are exhausted, or the first non-transient error
    """
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        started = time.monotonic()
        try:
            if timeout:
                result = await asyncio.wait_for(call(), timeout=timeout)
            else:
                result = await call()
        except Exception as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if on_attempt:
                on_attempt(attempt, None, e, elapsed_ms)
            transient = is_transient_error(e)
            if not transient or attempt == max_attempts:
                if transient:
                    log.warning("[Retry] %s failed after %d attempts: %s", label, attempt, e)
                raise
            log.info("[Retry] %s attempt %d/%d failed (%s); retrying in %.1fs",
                     label, attempt, max_attempts, e, delay)
            if delay > 0:
                await asyncio.sleep(delay)
            delay *= 2
            continue

        if on_attempt:
            on_attempt(attempt, result, None, int((time.monotonic() - started) * 1000))
        return result

    raise RuntimeError("retry_with_backoff called with max_attempts < 1")
