"""
Retry helpers with exponential backoff.

``retry_with_backoff`` is the general helper. ``retry_audio_download`` is
tuned for assets that are not ready yet right after a call ends (HTTP 404),
not for recovering from failures.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_READY_STATUSES = frozenset({404})
FATAL_AUTH_STATUSES = frozenset({401, 403})


def status_of(error: BaseException) -> int | None:
    """HTTP status carried by ``error``, if any."""
    code = getattr(error, "status_code", None)
    if code is None:
        code = getattr(getattr(error, "response", None), "status_code", None)
    return code if isinstance(code, int) else None


def backoff_delay(attempt: int, initial_delay: float, multiplier: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(initial_delay * multiplier ** (attempt - 1), max_delay)


async def retry_with_backoff(
    fn: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int = 5,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 1.5,
    should_retry: Callable[[Exception, int], bool] | None = None,
    on_retry: Callable[[Exception, int, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call ``fn(attempt)`` until it succeeds or attempts run out.

    Args:
        fn: Async callable receiving the 1-based attempt number.
        max_attempts: Total attempts including the first.
        initial_delay: Seconds before the first retry.
        max_delay: Upper bound for any delay.
        multiplier: Growth factor per attempt.
        should_retry: Decides per error whether another attempt is worthwhile.
        on_retry: Called with (error, attempt, delay) before sleeping.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        The first successful result.

    Raises:
        Exception: The last error when no attempt succeeded.
    """
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn(attempt)
        except Exception as e:
            last_error = e
            if attempt >= max_attempts or (should_retry is not None and not should_retry(e, attempt)):
                break

            delay = backoff_delay(attempt, initial_delay, multiplier, max_delay)
            logger.warning(f"Attempt {attempt}/{max_attempts} failed ({e}); retrying in {delay:.1f}s")
            if on_retry is not None:
                on_retry(e, attempt, delay)
            await sleep(delay)

    raise last_error or RuntimeError("No attempts were made")


def _audio_should_retry(error: Exception, attempt: int) -> bool:
    status = status_of(error)
    if status in NOT_READY_STATUSES:
        return True
    if status in FATAL_AUTH_STATUSES:
        return False
    return True


async def retry_audio_download(
    fn: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int = 10,
    initial_delay: float = 3.0,
    multiplier: float = 1.2,
    max_delay: float = 10.0,
    on_retry: Callable[[Exception, int, float], Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Retry a recording download while the backend reports it as not ready."""
    return await retry_with_backoff(
        fn,
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        multiplier=multiplier,
        should_retry=_audio_should_retry,
        on_retry=on_retry,
        sleep=sleep,
    )
