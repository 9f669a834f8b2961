# core/metrics.py

import logging
from prometheus_client import Counter, Histogram, Gauge

logger = logging.getLogger(__name__)

# ----------------------------
# Request Counters
# ----------------------------

LLM_REQUESTS = Counter(
    "llm_requests_total",
    "Total LLM generate requests",
    ["provider", "status"]  # status: success, error
)

LLM_RETRIES = Counter(
    "llm_retries_total",
    "Total retry attempts issued by the retry executor",
    ["provider"]
)

LLM_FALLBACKS = Counter(
    "llm_fallbacks_total",
    "Total fallback candidates attempted",
    ["provider"]
)

# ----------------------------
# Latency Histograms
# ----------------------------

LLM_LATENCY = Histogram(
    "llm_request_latency_seconds",
    "End-to-end LLM generate latency, including retries and fallbacks",
    ["provider"]
)

# ----------------------------
# Stream Metrics
# ----------------------------

STREAM_REQUESTS = Counter(
    "stream_requests_total",
    "Total streaming requests",
    ["provider", "status"]  # status: started, success, error
)

STREAM_LATENCY = Histogram(
    "stream_latency_seconds",
    "End-to-end streaming latency (seconds)",
    ["provider"]
)

# ----------------------------
# Circuit Breaker / Rate Limiter State
# ----------------------------

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed,1=open,2=half_open)",
    ["provider"]
)

RATE_LIMIT_EVENTS = Counter(
    "rate_limit_events_total",
    "Rate limiter interventions",
    ["provider", "outcome"]  # outcome: waited, rejected
)

_BREAKER_STATE_VALUES = {"closed": 0, "open": 1, "half_open": 2}


def _safely(fn, *args) -> None:
    # Do not let metric failures crash a request; just log.
    try:
        fn(*args)
    except Exception:
        logger.warning("metrics update failed", exc_info=True)


# ----------------------------
# LLM Metric Helper Functions
# ----------------------------

def record_llm_result(provider: str, success: bool, latency_sec: float) -> None:
    """Record one logical generate call (not individual attempts)."""
    def _record():
        LLM_REQUESTS.labels(provider=provider, status="success" if success else "error").inc()
        LLM_LATENCY.labels(provider=provider).observe(latency_sec)
    _safely(_record)


def increment_retry(provider: str) -> None:
    _safely(lambda: LLM_RETRIES.labels(provider=provider).inc())


def increment_fallback(provider: str) -> None:
    _safely(lambda: LLM_FALLBACKS.labels(provider=provider).inc())


# ----------------------------
# Stream Metric Helper Functions
# ----------------------------

def record_stream_start(provider: str) -> None:
    """Record the start of a streaming request."""
    _safely(lambda: STREAM_REQUESTS.labels(provider=provider, status="started").inc())


def record_stream_success(provider: str, duration_sec: float) -> None:
    """Record a successful streaming completion with its duration."""
    def _record():
        STREAM_REQUESTS.labels(provider=provider, status="success").inc()
        STREAM_LATENCY.labels(provider=provider).observe(duration_sec)
    _safely(_record)


def record_stream_failure(provider: str) -> None:
    """Record a failed streaming request."""
    _safely(lambda: STREAM_REQUESTS.labels(provider=provider, status="error").inc())


# ----------------------------
# Resilience State Helpers
# ----------------------------

def set_breaker_state(provider: str, state: str) -> None:
    _safely(lambda: CIRCUIT_STATE.labels(provider=provider).set(_BREAKER_STATE_VALUES.get(state, 0)))


def record_rate_limit_event(provider: str, outcome: str) -> None:
    _safely(lambda: RATE_LIMIT_EVENTS.labels(provider=provider, outcome=outcome).inc())
