# core/retry.py

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from core.exceptions import is_retryable
from core.metrics import increment_retry
from core.models import RetryPolicy

logger = logging.getLogger(__name__)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: Optional[RetryPolicy] = None,
    provider: Optional[str] = None,
    request_id: Optional[str] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
) -> Any:
    """
    Execute an async attempt function with bounded exponential backoff.

    Attempt i (0-based) is preceded by a sleep of
    ``min(base_delay * multiplier ** (i - 1), max_delay)`` for i > 0; there is no
    jitter. Rate-limiter and circuit-breaker rejections raised from inside
    `func` count as failed attempts and follow the same schedule, so an open
    breaker is never polled in a hot loop.

    Args:
        func: Async callable that takes no arguments and performs one attempt.
        policy: RetryPolicy; defaults to RetryPolicy().
        provider: Provider identity, for logging and metrics.
        request_id: Optional identifier for logging correlation.
        sleep: Awaitable sleep used between attempts.
        on_retry: Optional hook called before each backoff sleep with the
                  upcoming attempt index, the delay and the triggering exception.

    Returns:
        Result of the first successful attempt.

    Raises:
        The last exception encountered when it is not retryable or the attempt
        budget (max_retries + 1 attempts) is exhausted.
    """
    policy = policy or RetryPolicy()
    start_time = time.monotonic()
    attempt = 0

    while True:
        if attempt > 0:
            delay = policy.delay_for(attempt)
            logger.debug(
                "Retrying after failure",
                extra={
                    "event": "retry_attempt",
                    "provider": provider,
                    "attempt": attempt + 1,
                    "max_attempts": policy.max_retries + 1,
                    "delay": round(delay, 3),
                    "request_id": request_id,
                },
            )
            await sleep(delay)

        try:
            return await func()
        except Exception as exc:
            elapsed = time.monotonic() - start_time
            should_retry = is_retryable(exc, policy.retryable_errors)

            if not should_retry or attempt >= policy.max_retries:
                logger.warning(
                    "Retry exhausted or non-retryable error",
                    extra={
                        "event": "retry_failed",
                        "provider": provider,
                        "attempt": attempt + 1,
                        "max_attempts": policy.max_retries + 1,
                        "retryable": should_retry,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                        "request_id": request_id,
                        "elapsed_seconds": round(elapsed, 3),
                    },
                )
                raise

            logger.warning(
                "Attempt failed, will retry",
                extra={
                    "event": "retry_attempt",
                    "provider": provider,
                    "attempt": attempt + 1,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                    "request_id": request_id,
                    "elapsed_seconds": round(elapsed, 3),
                },
            )
            increment_retry(provider or "unknown")
            if on_retry:
                try:
                    on_retry(attempt + 1, policy.delay_for(attempt + 1), exc)
                except Exception:
                    logger.debug("on_retry hook failed", exc_info=True)

        attempt += 1
