"""
Request id middleware.

Every ingestion request gets a request id: the caller's X-Request-ID
when it is short and log-safe, a fresh one otherwise. The id is bound
into structlog context vars for the request and echoed back in the
response header.
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from pulse.core.context import clear_context, generate_request_id, set_request_id

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
# Caller-supplied ids end up in log lines
_ACCEPTED_ID = re.compile(r"[A-Za-z0-9_-]{1,64}")


def accepted_request_id(value: Optional[str]) -> Optional[str]:
    if value and _ACCEPTED_ID.fullmatch(value):
        return value
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = accepted_request_id(request.headers.get(REQUEST_ID_HEADER)) or generate_request_id()
        set_request_id(request_id)
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
            clear_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.debug(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            request_id=request_id,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response
