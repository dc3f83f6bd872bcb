"""
Per-request correlation id.

The middleware sets it, and anything running inside the request reads it.
That includes error capture and worker threads started through anyio,
which copy the context.
"""

import secrets
from contextvars import ContextVar
from typing import Any, Dict, Optional

_current_request_id: ContextVar[Optional[str]] = ContextVar("pulse_request_id", default=None)


def generate_request_id() -> str:
    """req_ followed by 16 hex characters."""
    return "req_" + secrets.token_hex(8)


def set_request_id(request_id: str) -> None:
    _current_request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _current_request_id.get()


def clear_context() -> None:
    _current_request_id.set(None)


def get_context_dict() -> Dict[str, Any]:
    """Context values to attach to logs and error reports."""
    request_id = _current_request_id.get()
    return {"request_id": request_id} if request_id else {}
