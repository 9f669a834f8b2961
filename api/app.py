# api/app.py
# NOTE:
# This is the operational surface only: liveness/readiness, aggregated
# provider health and Prometheus metrics. Request-serving routes live in
# the host application, which calls the orchestrator directly.

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from pydantic import BaseModel, Field
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from core.health import full_health_check
from core.logging_config import setup_logging
from core.orchestrator import init_orchestrator, close_orchestrator
from core.request_context import set_request_id

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: configure structured JSON logging
    setup_logging()

    # Initialize shared orchestrator (reads provider settings from the environment)
    app.state.orchestrator = await init_orchestrator()

    yield

    # Shutdown: release pooled HTTP connections
    await close_orchestrator()


app = FastAPI(
    title="LLM Orchestrator",
    lifespan=lifespan
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Reuse the caller's X-Request-ID or generate one, and store it in the context."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


class ProviderHealth(BaseModel):
    circuit_breaker: Dict[str, Any]
    rate_limit: Dict[str, Any]


class HealthReport(BaseModel):
    status: str = Field(..., description="ok, degraded or fail")
    providers: Dict[str, ProviderHealth] = Field(default_factory=dict)


@app.get("/health/live")
async def liveness():
    """Kubernetes liveness probe."""
    return {"status": "alive"}


@app.get("/health/ready")
async def readiness():
    """Kubernetes readiness probe."""
    health = await full_health_check()
    if health["status"] != "ok":
        return Response(
            content=json.dumps(health),
            status_code=503,
            media_type="application/json"
        )
    return health


@app.get("/health", response_model=HealthReport)
async def health(provider: Optional[str] = None):
    """Comprehensive health check for monitoring, optionally for one provider."""
    report = await full_health_check()
    if provider is not None:
        report["providers"] = {k: v for k, v in report["providers"].items() if k == provider}
    return report


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
