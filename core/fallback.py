# core/fallback.py
"""
Ordered fallback across providers.

The primary request runs through `execute` (normally the retry executor).
When it is exhausted, candidates are tried by ascending priority, each with
its own full retry budget but no nested fallback. The first success wins;
when every candidate fails the most recent error is propagated.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from core.metrics import increment_fallback
from core.models import FallbackPolicy, ModelRequest

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def run_with_fallback(
    primary: ModelRequest,
    fallback: Optional[FallbackPolicy],
    execute: Callable[[ModelRequest], Awaitable[T]],
    request_id: Optional[str] = None,
) -> T:
    """
    Args:
        primary: Request for the primary provider/model.
        fallback: Candidate list; None or empty means primary only.
        execute: Runs one provider/model to completion (retries included).
        request_id: Correlation id for logging.

    Candidates sharing the primary's provider are not filtered here; callers
    composing the policy are expected to leave them out.
    """
    try:
        return await execute(primary)
    except Exception as primary_error:
        if fallback is None or not fallback.candidates:
            raise
        last_error: Exception = primary_error
        logger.warning(
            "Primary provider failed, attempting fallbacks",
            extra={"event": "fallback_attempt", "provider": primary.provider,
                   "model": primary.model, "error": str(primary_error),
                   "request_id": request_id}
        )

    for candidate in fallback.ordered():
        request = primary.for_candidate(candidate.provider, candidate.model)
        logger.info(
            "Attempting fallback candidate",
            extra={"event": "fallback_attempt", "provider": request.provider,
                   "model": request.model, "priority": candidate.priority,
                   "request_id": request_id}
        )
        increment_fallback(request.provider)
        try:
            return await execute(request)
        except Exception as e:
            last_error = e
            logger.warning(
                "Fallback candidate failed",
                extra={"event": "fallback_failed", "provider": request.provider,
                       "model": request.model, "error": str(e), "request_id": request_id}
            )

    raise last_error
