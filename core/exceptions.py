# core/exceptions.py
"""
Centralized exception definitions for the LLM orchestrator.

Callers only ever see `ConfigurationError` (bad setup, raised before any
attempt) or an `OrchestrationError` carrying a category, the offending
provider and a retryable flag.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

import httpx


# ============================================================
# Base Exceptions
# ============================================================

class OrchestratorError(Exception):
    """
    Root base exception for the entire orchestrator.
    All custom exceptions inherit from this.
    """
    pass


class ConfigurationError(OrchestratorError):
    """
    Raised when a request cannot be attempted at all (missing credentials,
    unknown provider). Never retried and never counted by the circuit breaker.
    """

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    BAD_GATEWAY = "bad_gateway"
    CONNECTION_ERROR = "connection_error"
    UNCLASSIFIED = "unclassified"


_RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMITED,
    ErrorCategory.SERVICE_UNAVAILABLE,
    ErrorCategory.BAD_GATEWAY,
    ErrorCategory.CONNECTION_ERROR,
})

# Stable upper-case codes surfaced in logs and to_dict()
_CATEGORY_CODES = {
    ErrorCategory.TIMEOUT: "TIMEOUT_ERROR",
    ErrorCategory.RATE_LIMITED: "RATE_LIMIT_ERROR",
    ErrorCategory.SERVICE_UNAVAILABLE: "SERVICE_UNAVAILABLE",
    ErrorCategory.BAD_GATEWAY: "BAD_GATEWAY",
    ErrorCategory.CONNECTION_ERROR: "CONNECTION_ERROR",
    ErrorCategory.UNCLASSIFIED: "LLM_ERROR",
}


class OrchestrationError(OrchestratorError):
    """
    Terminal, classified failure of a generate/stream call.

    Attributes:
        category: ErrorCategory of the failure.
        provider: Provider identity the failure is attributed to.
        status_code: HTTP-like status code when known.
        retryable: Whether the category is transient by default.
        code: Stable upper-case code derived from the category.
        retry_after: Seconds a caller should wait before trying again, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.UNCLASSIFIED,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = ErrorCategory(category)
        self.provider = provider
        self.status_code = status_code
        self.retryable = self.category in _RETRYABLE_CATEGORIES if retryable is None else retryable
        self.retry_after = retry_after
        self.code = _CATEGORY_CODES[self.category]
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "category": self.category.value,
            "provider": self.provider,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================
# Locally synthesized rejections (never reach the transport)
# ============================================================

class RateLimitExceededError(OrchestrationError):
    """Raised when a provider's sliding window is saturated."""

    def __init__(self, provider: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {provider}. Try again in {retry_after:.3f}s",
            category=ErrorCategory.RATE_LIMITED,
            provider=provider,
            status_code=429,
            retry_after=retry_after,
        )


class CircuitBreakerOpenError(OrchestrationError):
    """Raised when the provider's circuit breaker refuses an attempt."""

    def __init__(self, provider: str, retry_after: Optional[float] = None, reason: str = "open"):
        if retry_after is not None:
            message = f"Circuit breaker is OPEN for {provider}. Next attempt in {retry_after:.3f}s"
        else:
            message = f"Circuit breaker is {reason.upper()} for {provider}"
        super().__init__(
            message,
            category=ErrorCategory.SERVICE_UNAVAILABLE,
            provider=provider,
            status_code=503,
            retry_after=retry_after,
        )


class AttemptTimeoutError(OrchestrationError):
    """Raised when a single attempt does not finish before its deadline."""

    def __init__(self, provider: Optional[str], timeout: float):
        super().__init__(
            f"Request timeout after {timeout}s",
            category=ErrorCategory.TIMEOUT,
            provider=provider,
        )
        self.timeout = timeout


# ============================================================
# Classification
# ============================================================

def _category_for_status(status: int) -> Optional[ErrorCategory]:
    if status == 429:
        return ErrorCategory.RATE_LIMITED
    if status == 503:
        return ErrorCategory.SERVICE_UNAVAILABLE
    if status == 502:
        return ErrorCategory.BAD_GATEWAY
    if status in (408, 504):
        return ErrorCategory.TIMEOUT
    return None


def _category_for_message(message: str) -> Optional[ErrorCategory]:
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered or "etimedout" in lowered:
        return ErrorCategory.TIMEOUT
    if "rate limit" in lowered or "429" in lowered:
        return ErrorCategory.RATE_LIMITED
    if "503" in lowered or "service unavailable" in lowered:
        return ErrorCategory.SERVICE_UNAVAILABLE
    if "502" in lowered or "bad gateway" in lowered:
        return ErrorCategory.BAD_GATEWAY
    if "econnreset" in lowered or "enotfound" in lowered or "connection reset" in lowered:
        return ErrorCategory.CONNECTION_ERROR
    return None


_STATUS_FOR_CATEGORY = {
    ErrorCategory.RATE_LIMITED: 429,
    ErrorCategory.SERVICE_UNAVAILABLE: 503,
    ErrorCategory.BAD_GATEWAY: 502,
}


def classify_error(exc: BaseException, provider: Optional[str]) -> OrchestrationError:
    """
    Convert any failure into an `OrchestrationError`.

    Order of precedence:
        1. Already-classified errors pass through unchanged.
        2. httpx exception types and HTTP status codes.
        3. Substring matching on the error message.
    The original exception is chained as `__cause__`.
    """
    if isinstance(exc, OrchestrationError):
        return exc

    message = str(exc) or type(exc).__name__
    status_code: Optional[int] = None
    category: Optional[ErrorCategory] = None

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        category = _category_for_status(status_code)
    elif isinstance(exc, (httpx.ConnectError, httpx.NetworkError, ConnectionError)):
        category = ErrorCategory.CONNECTION_ERROR

    if category is None:
        status_code = status_code or getattr(exc, "status_code", None)
        if isinstance(status_code, int):
            category = _category_for_status(status_code)
    if category is None:
        category = _category_for_message(message)
    if category is None:
        category = ErrorCategory.UNCLASSIFIED

    if status_code is None:
        status_code = _STATUS_FOR_CATEGORY.get(category)

    classified = OrchestrationError(
        message,
        category=category,
        provider=provider,
        status_code=status_code,
    )
    classified.__cause__ = exc
    return classified


def is_retryable(exc: BaseException, retryable_errors: Iterable[str]) -> bool:
    """
    Decide whether the Retry Executor should try again after `exc`.

    Matches the error's category value, its code attribute, and its message
    (case-insensitive substring) against the configured retryable set.
    """
    if isinstance(exc, (asyncio.CancelledError, ConfigurationError)):
        return False

    patterns = [p.lower() for p in retryable_errors]
    if not patterns:
        return False

    category = getattr(exc, "category", None)
    if category is not None and str(getattr(category, "value", category)).lower() in patterns:
        return True

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code.lower() in patterns:
        return True

    message = str(exc).lower()
    return any(p in message for p in patterns)
