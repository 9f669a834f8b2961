# core/models.py
"""
Canonical request/response shapes and resilience policies shared by the
orchestrator, the resilience primitives, and the provider transports.

Durations are seconds (floats) everywhere.
"""

from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

# Any equality-comparable token works as a provider key; known kinds are below.
ProviderIdentity = str


class Provider(str, Enum):
    """Provider kinds that ship with a transport."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    AZURE = "azure"


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    role: str
    content: str


def _to_message(raw: Union[Message, Mapping[str, Any]]) -> Message:
    if isinstance(raw, Message):
        return raw
    return Message(role=str(raw["role"]), content=str(raw["content"]))


@dataclass(frozen=True)
class ModelRequest:
    """
    Canonical generate request.

    Immutable: fallback candidates get a new request via `for_candidate()`.
    `api_key` / `base_url` are explicit per-request overrides; when unset the
    Provider Registry falls back to its configured defaults.
    """
    provider: ProviderIdentity
    model: str
    messages: Tuple[Message, ...] = ()
    deployment: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    def __post_init__(self):
        # Accept lists of dicts from callers and freeze them into Message tuples
        object.__setattr__(self, "messages", tuple(_to_message(m) for m in self.messages))
        if isinstance(self.provider, Provider):
            object.__setattr__(self, "provider", self.provider.value)

    def for_candidate(self, provider: ProviderIdentity, model: str) -> "ModelRequest":
        """Copy of this request retargeted at a fallback provider/model."""
        return ModelRequest(
            provider=provider.value if isinstance(provider, Provider) else provider,
            model=model,
            messages=self.messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            api_key=self.api_key,
            base_url=self.base_url,
        )

    def messages_as_dicts(self) -> list:
        return [{"role": m.role, "content": m.content} for m in self.messages]


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


_PROMPT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "inputTokens",
                "promptTokenCount", "prompt_eval_count")
_COMPLETION_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "outputTokens",
                    "candidatesTokenCount", "eval_count")
_TOTAL_KEYS = ("total_tokens", "totalTokens", "totalTokenCount")


def _first_present(raw: Mapping[str, Any], keys: Iterable[str]) -> Optional[int]:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return int(value)
    return None


def normalize_usage(raw: Union[Usage, Mapping[str, Any], None]) -> Optional[Usage]:
    """
    Map provider-specific token count spellings onto `Usage`.

    Returns None when the provider reported nothing usable.
    """
    if raw is None:
        return None
    if isinstance(raw, Usage):
        return raw
    if not isinstance(raw, Mapping):
        # SDK objects expose the counts as attributes
        raw = {k: getattr(raw, k) for k in (*_PROMPT_KEYS, *_COMPLETION_KEYS, *_TOTAL_KEYS)
               if getattr(raw, k, None) is not None}

    prompt = _first_present(raw, _PROMPT_KEYS)
    completion = _first_present(raw, _COMPLETION_KEYS)
    total = _first_present(raw, _TOTAL_KEYS)
    if prompt is None and completion is None and total is None:
        return None

    prompt = prompt or 0
    completion = completion or 0
    if total is None:
        total = prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass(frozen=True)
class ModelResponse:
    content: str
    usage: Optional[Usage] = None
    provider: Optional[ProviderIdentity] = None
    model: Optional[str] = None
    # Native usage payload as reported by the transport, before normalisation
    raw_usage: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class ResponseChunk:
    """
    One piece of a streamed response.

    Exactly one chunk per stream has `done=True`; only that chunk carries usage.
    `attempt` identifies the retry attempt that produced the chunk, so a consumer
    can tell when a retried stream replaced earlier partial output.
    """
    content: str
    done: bool = False
    usage: Optional[Usage] = None
    attempt: int = 0
    raw_usage: Optional[Mapping[str, Any]] = None


# ----------------------------------------------------------------------
# Policies
# ----------------------------------------------------------------------

DEFAULT_RETRYABLE_ERRORS = frozenset({
    "timeout",
    "rate_limited",
    "service_unavailable",
    "bad_gateway",
    "connection_error",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "rate_limit_exceeded",
})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay: Delay before the first retry (seconds).
        max_delay: Cap for any single backoff delay (seconds).
        backoff_multiplier: Growth factor between consecutive delays.
        retryable_errors: Categories, codes or message fragments considered retryable.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: frozenset = DEFAULT_RETRYABLE_ERRORS

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt index `attempt` (0 means no delay)."""
        if attempt <= 0:
            return 0.0
        return min(self.base_delay * (self.backoff_multiplier ** (attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    # Informational only; failures are not aged out of the count
    monitoring_period: float = 300.0


@dataclass(frozen=True)
class RateLimitPolicy:
    requests_per_minute: int = 60
    burst_limit: int = 10
    window: float = 60.0


@dataclass(frozen=True)
class FallbackCandidate:
    provider: ProviderIdentity
    model: str
    priority: int = 0


@dataclass(frozen=True)
class FallbackPolicy:
    candidates: Tuple[FallbackCandidate, ...] = ()
    max_fallback_attempts: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "candidates", tuple(self.candidates))

    def ordered(self) -> Tuple[FallbackCandidate, ...]:
        """Candidates by ascending priority, truncated to `max_fallback_attempts`."""
        ranked = sorted(self.candidates, key=lambda c: c.priority)
        limit = self.max_fallback_attempts or len(ranked)
        return tuple(ranked[:limit])


PolicyOverlay = Union[None, Mapping[str, Any], RetryPolicy, CircuitBreakerPolicy, RateLimitPolicy]


def merge_policy(default, overlay: PolicyOverlay):
    """
    Overlay a caller-supplied partial policy onto `default`.

    A full policy instance replaces the default; a mapping only overrides the
    keys it names. Unknown keys raise TypeError.
    """
    if overlay is None:
        return default
    if isinstance(overlay, type(default)):
        return overlay
    known = {f.name for f in fields(default)}
    unknown = set(overlay) - known
    if unknown:
        raise TypeError(f"Unknown {type(default).__name__} fields: {sorted(unknown)}")
    overrides: Dict[str, Any] = dict(overlay)
    if "retryable_errors" in overrides:
        overrides["retryable_errors"] = frozenset(overrides["retryable_errors"])
    return replace(default, **overrides)


@dataclass
class OrchestrationOptions:
    """
    Per-call resilience options; every field is optional.

    `timeout` <= 0 (or None) disables the per-attempt timeout guard.
    """
    timeout: Optional[float] = 300.0
    retry: PolicyOverlay = None
    circuit_breaker: PolicyOverlay = None
    rate_limit: PolicyOverlay = None
    fallback: Optional[FallbackPolicy] = None
    enable_logging: bool = True


@dataclass(frozen=True)
class ResolvedPolicies:
    timeout: Optional[float]
    retry: RetryPolicy
    circuit_breaker: CircuitBreakerPolicy
    rate_limit: RateLimitPolicy
    fallback: Optional[FallbackPolicy] = None
    enable_logging: bool = True


def resolve_policies(options: Optional[OrchestrationOptions]) -> ResolvedPolicies:
    options = options or OrchestrationOptions()
    return ResolvedPolicies(
        timeout=options.timeout,
        retry=merge_policy(RetryPolicy(), options.retry),
        circuit_breaker=merge_policy(CircuitBreakerPolicy(), options.circuit_breaker),
        rate_limit=merge_policy(RateLimitPolicy(), options.rate_limit),
        fallback=options.fallback,
        enable_logging=options.enable_logging,
    )
