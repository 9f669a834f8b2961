# providers/base.py
"""
Capability interface every provider transport implements.

A transport performs exactly one HTTP exchange per call. It never retries,
never sleeps and never classifies errors; raw httpx exceptions propagate to
the orchestrator, which owns all resilience behaviour.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from core.http_client import get_client
from core.models import ModelRequest, ModelResponse, ResponseChunk

logger = logging.getLogger(__name__)


class ProviderTransport(ABC):
    """One implementation per provider kind."""

    #: Provider kind this transport speaks (for logging).
    kind: str = "custom"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        # Shared per-loop client unless one was injected (tests, custom pools)
        return self._client if self._client is not None else get_client()

    @abstractmethod
    async def invoke_once(self, request: ModelRequest) -> ModelResponse:
        """Issue one blocking call and return the full response."""

    @abstractmethod
    def invoke_streaming(self, request: ModelRequest) -> AsyncIterator[ResponseChunk]:
        """
        Issue one streaming call.

        Yields content chunks as they arrive and finishes with a single chunk
        with `done=True` whose `raw_usage` holds whatever the provider reported.
        """


def parse_sse_data(line: str) -> Optional[str]:
    """Return the payload of an SSE `data:` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def load_json_event(data: str, provider: str) -> Optional[Dict[str, Any]]:
    """Decode one streamed JSON event; malformed events are logged and skipped."""
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        logger.warning(
            "Malformed stream event",
            extra={"event": "malformed_chunk", "provider": provider, "error": str(e), "data": data[:200]}
        )
        return None
