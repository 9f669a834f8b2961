"""
Sliding-window rate limiter, one window per provider.

Admission runs two checks in order:
    1. Burst: when the trailing window already holds `burst_limit` attempts,
       suspend until the oldest one leaves the window.
    2. Rate: when the window still holds `requests_per_minute` attempts,
       reject immediately with `RateLimitExceededError`.

Brief spikes are therefore smoothed by a bounded wait, while sustained
overload fails fast instead of queueing without bound.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional

from core.exceptions import RateLimitExceededError
from core.metrics import record_rate_limit_event
from core.models import RateLimitPolicy

logger = logging.getLogger(__name__)


class ProviderRateLimiter:
    """
    Attempt timestamps for one provider within the trailing window.

    Mutations are serialised with an asyncio.Lock; the lock is released while
    sleeping out a burst so other providers and readers are never blocked.
    """

    def __init__(
        self,
        provider: str,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()
        self._window = RateLimitPolicy().window
        self._last_reset = time.time()
        self._lock = asyncio.Lock()

    def _trim(self, now: float, window: float) -> None:
        while self._requests and now - self._requests[0] >= window:
            self._requests.popleft()

    async def admit(self, policy: RateLimitPolicy) -> None:
        """
        Admit one attempt or raise.

        :raises RateLimitExceededError: if the window is saturated after any burst wait.
        """
        window = policy.window
        self._window = window

        async with self._lock:
            now = self._clock()
            self._trim(now, window)
            burst_wait = 0.0
            deadline = now
            if len(self._requests) >= policy.burst_limit and self._requests:
                deadline = self._requests[0] + window
                burst_wait = deadline - now

        if burst_wait > 0:
            logger.warning(
                "Rate limit burst hit, waiting",
                extra={"event": "rate_limit_wait", "provider": self.provider,
                       "wait_seconds": round(burst_wait, 3)},
            )
            record_rate_limit_event(self.provider, "waited")
            await self._sleep(burst_wait)

        async with self._lock:
            # The sleep may wake a clock tick early; never treat it as before the deadline
            now = max(self._clock(), deadline)
            self._trim(now, window)
            if len(self._requests) >= policy.requests_per_minute and self._requests:
                retry_after = window - (now - self._requests[0])
                if retry_after > 0:
                    logger.warning(
                        "Rate limit exceeded",
                        extra={"event": "rate_limit_rejected", "provider": self.provider,
                               "retry_after": round(retry_after, 3)},
                    )
                    record_rate_limit_event(self.provider, "rejected")
                    raise RateLimitExceededError(self.provider, retry_after)
            self._requests.append(now)

    def request_count(self) -> int:
        self._trim(self._clock(), self._window)
        return len(self._requests)

    def status(self) -> dict:
        """Read-only snapshot for operational visibility."""
        return {
            "request_count": self.request_count(),
            "last_reset": self._last_reset,
        }


class RateLimiterRegistry:
    """Lazily creates one ProviderRateLimiter per provider identity."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._limiters: Dict[str, ProviderRateLimiter] = {}

    def get(self, provider: str) -> ProviderRateLimiter:
        limiter = self._limiters.get(provider)
        if limiter is None:
            limiter = ProviderRateLimiter(provider, clock=self._clock, sleep=self._sleep)
            self._limiters[provider] = limiter
        return limiter

    def peek(self, provider: str) -> Optional[ProviderRateLimiter]:
        return self._limiters.get(provider)

    def providers(self):
        return list(self._limiters)

    async def admit(self, provider: str, policy: RateLimitPolicy) -> None:
        await self.get(provider).admit(policy)
