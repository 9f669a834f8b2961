"""
core/orchestrator.py

Resilient multi-provider request orchestrator.

Every logical generate call runs through
    fallback -> retry -> {circuit breaker, rate limiter, timeout, transport}
and surfaces either a `ModelResponse` or a single classified
`OrchestrationError`. Streaming applies the same admission checks once per
retry attempt, never per chunk, and does not compose fallback.

Singleton instance is obtained via init_orchestrator().

FastAPI integration example:

    from contextlib import asynccontextmanager
    from fastapi import FastAPI
    from core.orchestrator import init_orchestrator, close_orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_orchestrator()
        yield
        await close_orchestrator()
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from core.circuit_breaker import CircuitBreakerRegistry
from core.exceptions import (
    ConfigurationError,
    OrchestrationError,
    classify_error,
    is_retryable,
)
from core.fallback import run_with_fallback
from core.http_client import close_client
from core.metrics import (
    increment_retry,
    record_llm_result,
    record_stream_failure,
    record_stream_start,
    record_stream_success,
)
from core.models import (
    FallbackCandidate,
    FallbackPolicy,
    ModelRequest,
    ModelResponse,
    OrchestrationOptions,
    ResolvedPolicies,
    ResponseChunk,
    normalize_usage,
    resolve_policies,
)
from core.rate_limiter import RateLimiterRegistry
from core.request_context import get_request_id
from core.retry import retry_async
from core.timeout import iter_with_timeout, with_timeout
from providers.base import ProviderTransport
from providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Cheaper/faster models first, more capable ones as a last resort
SMART_FALLBACK_CANDIDATES = (
    FallbackCandidate("openai", "gpt-3.5-turbo", priority=1),
    FallbackCandidate("anthropic", "claude-3-haiku-20240307", priority=2),
    FallbackCandidate("google", "gemini-1.5-flash", priority=3),
    FallbackCandidate("openai", "gpt-4o", priority=4),
    FallbackCandidate("anthropic", "claude-3-5-sonnet-20241022", priority=5),
)
SMART_FALLBACK_MAX_ATTEMPTS = 2


class LLMOrchestrator:
    """
    Facade over the resilience primitives.

    Per-provider breaker and rate-limit state is owned by this instance and
    shared by every call made through it.

    Args:
        registry: Provider Registry used to validate requests and build transports.
        clock: Monotonic clock for breaker deadlines and rate-limit windows.
        sleep: Awaitable sleep for backoff and burst waits.
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry or ProviderRegistry()
        self._clock = clock
        self._sleep = sleep
        self.rate_limiters = RateLimiterRegistry(clock=clock, sleep=sleep)
        self.circuit_breakers = CircuitBreakerRegistry(clock=clock)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Release shared HTTP resources (idempotent)."""
        await close_client()

    # ----------------------------------------------------------------------
    # Single attempt
    # ----------------------------------------------------------------------

    async def _admit(self, provider: str, policies: ResolvedPolicies) -> bool:
        """
        Breaker admission, then rate-limit admission.

        Attempts the breaker refuses never take a slot in the rate window. When
        the rate limiter rejects an admitted attempt its half-open slot is given back.
        Returns the breaker token for the attempt.
        """
        breaker = self.circuit_breakers.get(provider)
        trial = await breaker.admit()
        try:
            await self.rate_limiters.admit(provider, policies.rate_limit)
        except BaseException:
            await breaker.release(trial)
            raise
        return trial

    async def _attempt_once(
        self,
        request: ModelRequest,
        transport: ProviderTransport,
        policies: ResolvedPolicies,
    ) -> ModelResponse:
        """Breaker admission, rate-limit admission, then one timed transport call."""
        provider = request.provider
        trial = await self._admit(provider, policies)
        breaker = self.circuit_breakers.get(provider)
        try:
            response = await breaker.call(
                lambda: with_timeout(lambda: transport.invoke_once(request), policies.timeout, provider),
                policies.circuit_breaker,
                admitted=trial,
            )
        except OrchestrationError:
            raise
        except Exception as exc:
            raise classify_error(exc, provider) from exc

        return replace(
            response,
            usage=normalize_usage(response.usage or response.raw_usage),
            provider=response.provider or provider,
            model=response.model or request.model,
        )

    async def _run_with_retry(
        self,
        request: ModelRequest,
        policies: ResolvedPolicies,
        request_id: Optional[str],
    ) -> ModelResponse:
        # Fallback candidates are validated lazily; a misconfigured one simply fails
        self.registry.validate(request)
        transport = self.registry.get_transport(request)
        return await retry_async(
            lambda: self._attempt_once(request, transport, policies),
            policy=policies.retry,
            provider=request.provider,
            request_id=request_id,
            sleep=self._sleep,
        )

    # ----------------------------------------------------------------------
    # Public API
    # ----------------------------------------------------------------------

    async def generate(
        self,
        request: ModelRequest,
        options: Optional[OrchestrationOptions] = None,
        *,
        request_id: Optional[str] = None,
    ) -> ModelResponse:
        """
        Generate a complete response with timeout, retry, circuit breaking,
        rate limiting and ordered fallback.

        Raises:
            ConfigurationError: the primary request cannot be attempted at all.
            OrchestrationError: every attempt on every candidate failed.
        """
        policies = resolve_policies(options)
        request_id = request_id or get_request_id()
        self.registry.validate(request)
        if policies.enable_logging:
            logger.debug(
                "Executing LLM request",
                extra={"event": "llm_request", "provider": request.provider, "model": request.model,
                       "max_retries": policies.retry.max_retries,
                       "fallback_candidates": len(policies.fallback.candidates) if policies.fallback else 0,
                       "request_id": request_id},
            )

        start = time.monotonic()
        last_provider = request.provider

        async def execute(req: ModelRequest) -> ModelResponse:
            nonlocal last_provider
            last_provider = req.provider
            return await self._run_with_retry(req, policies, request_id)

        try:
            response = await run_with_fallback(request, policies.fallback, execute, request_id)
        except ConfigurationError:
            raise
        except Exception as exc:
            latency = time.monotonic() - start
            error = classify_error(exc, last_provider)
            record_llm_result(last_provider, False, latency)
            logger.error(
                "LLM generate failed",
                extra={"event": "llm_error", "provider": last_provider, "model": request.model,
                       "error_code": error.code, "error": error.message,
                       "latency_sec": round(latency, 3), "request_id": request_id},
            )
            raise error

        latency = time.monotonic() - start
        record_llm_result(response.provider, True, latency)
        if policies.enable_logging:
            logger.info(
                "LLM generate completed",
                extra={
                    "event": "llm_generate",
                    "provider": request.provider,
                    "actual_provider": response.provider,
                    "model": response.model,
                    "latency_sec": round(latency, 3),
                    "total_tokens": response.usage.total_tokens if response.usage else None,
                    "request_id": request_id,
                },
            )
        return response

    async def generate_stream(
        self,
        request: ModelRequest,
        options: Optional[OrchestrationOptions] = None,
        *,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[ResponseChunk]:
        """
        Stream a response chunk by chunk.

        Chunks are forwarded as they arrive, tagged with the retry attempt that
        produced them. If an attempt fails mid-stream and is retried, the new
        attempt's chunks replace (not extend) anything seen before; consumers
        detect this by a change in `chunk.attempt`. The sequence always ends with
        exactly one chunk with `done=True` carrying normalised usage.

        Fallback is not applied here; the caller may re-invoke against another
        provider.
        """
        policies = resolve_policies(options)
        request_id = request_id or get_request_id()
        self.registry.validate(request)
        transport = self.registry.get_transport(request)

        provider = request.provider
        retry = policies.retry
        if policies.enable_logging:
            logger.debug(
                "Executing LLM stream request",
                extra={"event": "llm_request", "provider": provider, "model": request.model,
                       "max_retries": retry.max_retries, "stream": True,
                       "request_id": request_id},
            )
        breaker = self.circuit_breakers.get(provider)
        start = time.monotonic()
        record_stream_start(provider)

        attempt = 0
        raw_usage: Any = None
        usage: Any = None
        while True:
            if attempt > 0:
                await self._sleep(retry.delay_for(attempt))

            raw_usage = usage = None
            stream: Optional[AsyncIterator[ResponseChunk]] = None
            try:
                trial = await self._admit(provider, policies)
                stream = breaker.protect_stream(
                    lambda: iter_with_timeout(transport.invoke_streaming(request), policies.timeout, provider),
                    policies.circuit_breaker,
                    admitted=trial,
                )
                async for chunk in stream:
                    if chunk.done:
                        raw_usage, usage = chunk.raw_usage, chunk.usage
                        continue
                    if chunk.content:
                        yield ResponseChunk(content=chunk.content, attempt=attempt)
                break
            except Exception as exc:
                error = classify_error(exc, provider)
                should_retry = is_retryable(error, retry.retryable_errors)
                if not should_retry or attempt >= retry.max_retries:
                    record_stream_failure(provider)
                    logger.error(
                        "LLM stream failed",
                        extra={"event": "llm_error", "provider": provider, "model": request.model,
                               "attempt": attempt + 1, "retryable": should_retry,
                               "error_code": error.code, "error": error.message,
                               "request_id": request_id},
                    )
                    raise error
                logger.warning(
                    "Stream attempt failed, will retry",
                    extra={"event": "retry_attempt", "provider": provider, "attempt": attempt + 1,
                           "error_type": type(exc).__name__, "error_message": str(exc),
                           "request_id": request_id},
                )
                increment_retry(provider)
                attempt += 1
            finally:
                if stream is not None:
                    await stream.aclose()

        yield ResponseChunk(
            content="",
            done=True,
            usage=normalize_usage(usage or raw_usage),
            attempt=attempt,
            raw_usage=raw_usage,
        )

        duration = time.monotonic() - start
        record_stream_success(provider, duration)
        if policies.enable_logging:
            logger.info(
                "LLM stream completed",
                extra={"event": "llm_stream", "provider": provider, "model": request.model,
                       "attempts": attempt + 1, "latency_sec": round(duration, 3),
                       "request_id": request_id},
            )

    async def generate_with(
        self,
        provider: str,
        model: str,
        messages: Iterable[Any],
        options: Optional[OrchestrationOptions] = None,
        **request_fields: Any,
    ) -> ModelResponse:
        """Shorthand: build the ModelRequest from arguments and call generate()."""
        request = ModelRequest(provider=provider, model=model, messages=tuple(messages), **request_fields)
        return await self.generate(request, options)

    async def generate_with_smart_fallback(
        self,
        request: ModelRequest,
        options: Optional[OrchestrationOptions] = None,
    ) -> ModelResponse:
        """
        generate() with a built-in fallback chain of well-known models, skipping
        the primary's own provider and capped at two candidates.
        """
        candidates = tuple(c for c in SMART_FALLBACK_CANDIDATES if c.provider != request.provider)
        fallback = FallbackPolicy(candidates, max_fallback_attempts=SMART_FALLBACK_MAX_ATTEMPTS)
        options = replace(options or OrchestrationOptions(), fallback=fallback)
        return await self.generate(request, options)

    # ----------------------------------------------------------------------
    # Health / administration
    # ----------------------------------------------------------------------

    def get_circuit_breaker_status(self, provider: str) -> Dict[str, Any]:
        breaker = self.circuit_breakers.peek(provider)
        if breaker is None:
            return {"state": "closed", "failure_count": 0}
        return breaker.status()

    def get_rate_limit_status(self, provider: str) -> Dict[str, Any]:
        limiter = self.rate_limiters.peek(provider)
        if limiter is None:
            return {"request_count": 0, "last_reset": None}
        return limiter.status()

    def health(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot for every provider that has seen traffic."""
        providers = dict.fromkeys(self.circuit_breakers.providers() + self.rate_limiters.providers())
        return {
            provider: {
                "circuit_breaker": self.get_circuit_breaker_status(provider),
                "rate_limit": self.get_rate_limit_status(provider),
            }
            for provider in providers
        }

    async def reset_circuit_breaker(self, provider: str) -> None:
        await self.circuit_breakers.reset(provider)


# ----------------------------------------------------------------------
# Singleton instance management
# ----------------------------------------------------------------------
_orchestrator: Optional[LLMOrchestrator] = None
_init_lock = asyncio.Lock()


async def init_orchestrator(registry: Optional[ProviderRegistry] = None) -> LLMOrchestrator:
    """
    Async-safe singleton initializer. Provider credentials are read from the
    environment (see core/config.py) unless a registry is supplied.
    """
    global _orchestrator
    async with _init_lock:
        if _orchestrator is None:
            _orchestrator = LLMOrchestrator(registry)
            logger.info(
                "LLM orchestrator initialized",
                extra={"event": "orchestrator_init", "providers": _orchestrator.registry.providers()},
            )
    return _orchestrator


def get_orchestrator() -> LLMOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("LLM orchestrator not initialized. Call init_orchestrator() first.")
    return _orchestrator


async def close_orchestrator() -> None:
    """Close and clear the singleton (idempotent)."""
    global _orchestrator
    if _orchestrator is None:
        return
    try:
        await _orchestrator.close()
    except Exception as e:
        logger.exception("Error while closing LLM orchestrator", exc_info=e)
    finally:
        _orchestrator = None
