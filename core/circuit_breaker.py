"""
Async Circuit Breaker

Per-provider circuit breaker with three states: CLOSED, OPEN, HALF_OPEN.

Failure accounting is decaying rather than resetting: in CLOSED a success only
decrements the failure count, so isolated successes do not immediately forgive
a bad streak. A HALF_OPEN probe is decisive in either direction; attempts admitted
before the breaker tripped only adjust the failure count when they finish.

`CircuitBreakerRegistry` holds one breaker per provider identity, created lazily
and kept for the lifetime of the owning orchestrator.
"""

import asyncio
import time
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from core.exceptions import CircuitBreakerOpenError
from core.metrics import set_breaker_state
from core.models import CircuitBreakerPolicy

T = TypeVar("T")  # Return type of the protected function

logger = logging.getLogger(__name__)


class BreakerState(str, Enum):
    """Enum representing the three possible states of the circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ProviderCircuitBreaker:
    """
    Asynchronous circuit breaker for a single provider.

    Typical usage:
        breaker = registry.get("openai")
        result = await breaker.call(do_request, policy)

    Streaming callers wrap the transport iterator with `protect_stream()`.
    Callers that gate attempts on more than the breaker call `admit()` themselves
    and hand the returned token to `call(..., admitted=token)`.
    Thresholds come from the per-call `CircuitBreakerPolicy`; the state itself is
    long-lived and shared by every call against the provider.
    """

    def __init__(self, provider: str, clock: Callable[[], float] = time.monotonic):
        """
        :param provider: Provider identity this breaker guards.
        :param clock: Monotonic clock used for recovery deadlines.
        """
        self.provider = provider
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: float = 0.0
        self._probe_in_flight = False

        self._lock = asyncio.Lock()

    # ----------------------------------------------------------------------
    # Public properties and inspection methods
    # ----------------------------------------------------------------------

    @property
    def state(self) -> str:
        """Current state of the circuit breaker (readable string)."""
        return self._state.value

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        """Wall-clock time of the most recent recorded failure."""
        return self._last_failure_time

    def status(self) -> dict:
        """Read-only snapshot; `next_attempt_time` (epoch seconds) is present only when OPEN."""
        snapshot = {"state": self.state, "failure_count": self._failure_count}
        if self._state == BreakerState.OPEN:
            remaining = self._next_attempt_time - self._clock()
            snapshot["next_attempt_time"] = time.time() + max(0.0, remaining)
        return snapshot

    async def reset(self) -> None:
        """
        Manually force the circuit breaker back to CLOSED state.
        Use with caution; intended for administrative recovery.
        """
        async with self._lock:
            self._state = BreakerState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            self._next_attempt_time = 0.0
            self._probe_in_flight = False
        set_breaker_state(self.provider, self.state)
        logger.info(
            "Circuit breaker manually reset to CLOSED",
            extra={"event": "breaker_reset", "provider": self.provider}
        )

    # ----------------------------------------------------------------------
    # Admission and outcome recording
    # ----------------------------------------------------------------------

    async def admit(self) -> bool:
        """
        Admission check performed before every attempt.

        OPEN refuses until the recovery deadline passes, then moves to HALF_OPEN
        and lets exactly one probe through. While that probe is outstanding every
        other attempt is refused.

        :returns: True when the admitted attempt holds the half-open probe slot.
            Pass it back to `record_success`, `record_failure` or `release`.
        :raises CircuitBreakerOpenError: if the attempt is refused.
        """
        async with self._lock:
            now = self._clock()
            if self._state == BreakerState.OPEN:
                if now < self._next_attempt_time:
                    raise CircuitBreakerOpenError(self.provider, retry_after=self._next_attempt_time - now)
                self._state = BreakerState.HALF_OPEN
                self._probe_in_flight = False
                logger.info(
                    "Circuit breaker transitioned to HALF_OPEN after timeout",
                    extra={"event": "breaker_half_open", "provider": self.provider}
                )
                set_breaker_state(self.provider, self.state)

            if self._state == BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitBreakerOpenError(self.provider, reason="half_open")
                self._probe_in_flight = True
                return True
            return False

    async def record_success(self, trial: bool = False) -> None:
        async with self._lock:
            if trial:
                self._probe_in_flight = False
                if self._state == BreakerState.HALF_OPEN:
                    self._state = BreakerState.CLOSED
                    self._failure_count = 0
                    logger.info(
                        "Circuit breaker closed after successful probe",
                        extra={"event": "breaker_closed", "provider": self.provider}
                    )
                    set_breaker_state(self.provider, self.state)
            elif self._state == BreakerState.CLOSED:
                self._failure_count = max(0, self._failure_count - 1)
            # Late successes from attempts admitted before the breaker tripped
            # never decide a half-open outcome

    async def record_failure(self, policy: CircuitBreakerPolicy, trial: bool = False) -> None:
        async with self._lock:
            if trial:
                self._probe_in_flight = False
            self._failure_count += 1
            self._last_failure_time = time.time()
            logger.debug(
                "Failure recorded",
                extra={"event": "breaker_failure", "provider": self.provider,
                       "failure_count": self._failure_count}
            )

            if self._state == BreakerState.CLOSED and self._failure_count >= policy.failure_threshold:
                self._open(policy)
                logger.warning(
                    "Circuit breaker opened",
                    extra={"event": "breaker_open", "provider": self.provider,
                           "failure_count": self._failure_count,
                           "threshold": policy.failure_threshold}
                )
            elif trial and self._state == BreakerState.HALF_OPEN:
                # A failed probe re-opens immediately with a fresh deadline
                self._open(policy)
                logger.warning(
                    "Circuit breaker reopened after failed half-open probe",
                    extra={"event": "breaker_reopened", "provider": self.provider}
                )

    async def release(self, trial: bool = False) -> None:
        """Give back an unused probe slot (attempt abandoned before any outcome)."""
        if not trial:
            return
        async with self._lock:
            self._probe_in_flight = False

    def _open(self, policy: CircuitBreakerPolicy) -> None:
        """Must be called while holding the lock."""
        self._state = BreakerState.OPEN
        self._next_attempt_time = self._clock() + policy.recovery_timeout
        set_breaker_state(self.provider, self.state)

    # ----------------------------------------------------------------------
    # Core `call()` method (for coroutines)
    # ----------------------------------------------------------------------

    async def call(
        self,
        func: Callable[[], Awaitable[T]],
        policy: CircuitBreakerPolicy,
        admitted: Optional[bool] = None,
    ) -> T:
        """
        Execute `func` under circuit breaker protection.

        Every outcome counts, independent of whether the error is retryable.
        Cancellation records nothing but frees the probe slot.

        :param admitted: Result of an `admit()` the caller already performed.
            When omitted the breaker admits the attempt itself.
        :raises CircuitBreakerOpenError: If the circuit refuses the attempt.
        :raises Exception: Any exception raised by `func` is propagated.
        """
        trial = await self.admit() if admitted is None else admitted
        try:
            result = await func()
        except asyncio.CancelledError:
            await self.release(trial)
            raise
        except Exception:
            await self.record_failure(policy, trial)
            raise
        await self.record_success(trial)
        return result

    # ----------------------------------------------------------------------
    # Generator protection (for streaming)
    # ----------------------------------------------------------------------

    async def protect_stream(
        self,
        agen_factory: Callable[[], AsyncIterator[T]],
        policy: CircuitBreakerPolicy,
        admitted: Optional[bool] = None,
    ) -> AsyncIterator[T]:
        """
        Protect a streaming iterator produced by `agen_factory()`.

        The outcome is recorded once for the whole stream, never per item.
        Unless `admitted` is given, admission happens on first iteration.
        """
        trial = await self.admit() if admitted is None else admitted
        recorded = False
        agen = agen_factory()
        try:
            async for item in agen:
                yield item
        except Exception:
            recorded = True
            await self.record_failure(policy, trial)
            raise
        else:
            recorded = True
            await self.record_success(trial)
        finally:
            if not recorded:
                # Consumer walked away or was cancelled mid-stream
                await self.release(trial)
            aclose = getattr(agen, "aclose", None)
            if aclose is not None:
                await aclose()


# ----------------------------------------------------------------------
# Registry for managing per-provider circuit breakers
# ----------------------------------------------------------------------

class CircuitBreakerRegistry:
    """
    Holds ProviderCircuitBreaker instances keyed by provider identity.
    Owned by an orchestrator instance, never module-global.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._breakers: Dict[str, ProviderCircuitBreaker] = {}

    def get(self, provider: str) -> ProviderCircuitBreaker:
        """Retrieve the breaker for `provider`, creating a CLOSED one on first use."""
        breaker = self._breakers.get(provider)
        if breaker is None:
            breaker = ProviderCircuitBreaker(provider, clock=self._clock)
            self._breakers[provider] = breaker
        return breaker

    def peek(self, provider: str) -> Optional[ProviderCircuitBreaker]:
        return self._breakers.get(provider)

    def providers(self):
        return list(self._breakers)

    async def reset(self, provider: str) -> None:
        await self.get(provider).reset()
