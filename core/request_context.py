# core/request_context.py
"""
Per-request correlation id, carried through asyncio tasks via a ContextVar.
"""

import uuid
from contextvars import ContextVar
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind `request_id` (or a fresh uuid4) to the current context and return it."""
    request_id = request_id or str(uuid.uuid4())
    _request_id.set(request_id)
    return request_id
