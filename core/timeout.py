# core/timeout.py
"""
Deadline guards for single attempts.

Unlike a bare race, `asyncio.wait_for` cancels the losing attempt, so the
underlying httpx request is torn down and its connection returned to the pool.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from core.exceptions import AttemptTimeoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _guard_enabled(timeout: Optional[float]) -> bool:
    return timeout is not None and timeout > 0


async def with_timeout(
    func: Callable[[], Awaitable[T]],
    timeout: Optional[float],
    provider: Optional[str] = None,
) -> T:
    """
    Await `func()` but give up after `timeout` seconds.

    A timeout of None, 0 or less disables the guard entirely.

    :raises AttemptTimeoutError: if the attempt did not finish in time.
    """
    if not _guard_enabled(timeout):
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout)
    except asyncio.TimeoutError as te:
        logger.warning(
            "Attempt timed out",
            extra={"event": "attempt_timeout", "provider": provider, "timeout": timeout}
        )
        raise AttemptTimeoutError(provider, timeout) from te


async def iter_with_timeout(
    stream: AsyncIterator[T],
    timeout: Optional[float],
    provider: Optional[str] = None,
) -> AsyncIterator[T]:
    """
    Wrap an async iterator so each wait for the next item (the first included)
    is bounded by `timeout`. Closes the underlying iterator on exit.
    """
    ait = stream.__aiter__()
    try:
        while True:
            try:
                if _guard_enabled(timeout):
                    item = await asyncio.wait_for(ait.__anext__(), timeout=timeout)
                else:
                    item = await ait.__anext__()
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError as te:
                logger.warning(
                    "Stream chunk timed out",
                    extra={"event": "attempt_timeout", "provider": provider, "timeout": timeout}
                )
                raise AttemptTimeoutError(provider, timeout) from te
            yield item
    finally:
        aclose = getattr(ait, "aclose", None)
        if aclose is not None:
            await aclose()
