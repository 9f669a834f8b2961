# core/health.py

from typing import Dict, Optional

from core.orchestrator import LLMOrchestrator, get_orchestrator


async def full_health_check(orchestrator: Optional[LLMOrchestrator] = None) -> Dict:
    """
    Aggregate per-provider breaker and rate-limit snapshots.

    Status is "degraded" as soon as any provider's breaker is not CLOSED.
    Providers that have not seen traffic yet are not listed.
    """
    try:
        orchestrator = orchestrator or get_orchestrator()
    except RuntimeError:
        return {"status": "fail", "providers": {}}

    providers = orchestrator.health()
    overall = "ok"
    for snapshot in providers.values():
        if snapshot["circuit_breaker"]["state"] != "closed":
            overall = "degraded"
            break

    return {
        "status": overall,
        "providers": providers
    }
