# core/http_client.py
"""
Shared httpx.AsyncClient for provider transports, one per running event loop.

Transports never own a client; they borrow this one unless a client was
injected into the Provider Registry.
"""

import asyncio
import logging
from typing import Optional
from weakref import WeakKeyDictionary

import httpx

from core.config import HttpPoolSettings, load_http_pool_settings

logger = logging.getLogger(__name__)

# HTTP/2 needs the optional 'h2' package
try:
    import h2  # noqa: F401
    HTTP2_ENABLED = True
except ImportError:
    HTTP2_ENABLED = False

_clients: "WeakKeyDictionary[asyncio.AbstractEventLoop, httpx.AsyncClient]" = WeakKeyDictionary()


def build_client(settings: Optional[HttpPoolSettings] = None) -> httpx.AsyncClient:
    settings = settings or load_http_pool_settings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.connect_timeout,
            read=settings.read_timeout,
            write=settings.write_timeout,
            pool=settings.pool_timeout,
        ),
        limits=httpx.Limits(
            max_connections=settings.max_connections,
            max_keepalive_connections=settings.max_keepalive_connections,
        ),
        follow_redirects=True,
        http2=HTTP2_ENABLED,
    )


def get_client() -> httpx.AsyncClient:
    """Client bound to the current loop, created lazily and recreated once closed."""
    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is None or client.is_closed:
        client = build_client()
        _clients[loop] = client
        logger.debug("Created provider HTTP client", extra={"event": "http_client_created", "http2": HTTP2_ENABLED})
    return client


async def close_client() -> None:
    """Close every pooled client. Call during application shutdown."""
    for client in list(_clients.values()):
        try:
            await client.aclose()
        except Exception:
            logger.warning("Provider HTTP client close failed", extra={"event": "http_client_close_failed"}, exc_info=True)
    _clients.clear()
