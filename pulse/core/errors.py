"""
Unified error handling with Sentry integration.

Provides:
- The collector's exception taxonomy (validation, rate limiting,
  per-event processing and client delivery failures)
- Automatic Sentry error tracking (when configured)
- Structured logging with request context enrichment

Usage:
    # Capture an exception
    capture_exception(exc, context={"session_id": "sess_1"})

    # Isolate a failure that must not abort the caller
    with ErrorHandler("process_event", context={"session_id": "sess_1"}):
        await processor.process(event, headers)
"""

import logging
from typing import Optional, Any, Callable, Dict, List, Sequence
from datetime import datetime, timezone

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from pulse.core.context import get_request_id, get_context_dict

logger = structlog.get_logger(__name__)

__all__ = [
    "CollectorError",
    "EventValidationError",
    "UnknownProjectError",
    "RateLimitedError",
    "ProcessingError",
    "TransientDeliveryError",
    "init_sentry",
    "capture_exception",
    "capture_message",
    "ErrorHandler",
]


class CollectorError(Exception):
    """Base class for errors raised by the collection pipeline."""

    status_code: int = 500
    message: str = "Internal server error"

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class EventValidationError(CollectorError):
    """The request body does not match the event shape. Never retried."""

    status_code = 400
    message = "Invalid request data"

    def __init__(self, details: Sequence[Any] = ()):
        super().__init__(self.message)
        self.details = list(details)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "details": self.details}


class UnknownProjectError(EventValidationError):
    """One or more project ids in the batch do not exist."""

    message = "Invalid project IDs"

    def __init__(self, project_ids: List[str]):
        super().__init__()
        self.project_ids = project_ids

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "projects": self.project_ids}


class RateLimitedError(CollectorError):
    """Admission denied by a fixed-window limiter."""

    status_code = 429

    def __init__(self, scope: str, retry_after: int):
        self.scope = scope
        self.retry_after = retry_after
        self.message = "Project rate limit exceeded" if scope == "project" else "Rate limit exceeded"
        super().__init__(self.message)


class ProcessingError(CollectorError):
    """A single admitted event failed to persist."""

    def __init__(self, session_id: str, cause: BaseException):
        super().__init__(f"Failed to process event for session {session_id}: {cause}")
        self.session_id = session_id
        self.cause = cause


class TransientDeliveryError(CollectorError):
    """Client-side delivery failure worth retrying (network error, 429, 5xx)."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.response_status = status_code


# Set by init_sentry; capture helpers only log until then
_sentry_initialized: bool = False

# Proxy headers carrying raw client addresses
_ADDRESS_HEADERS = ("X-Forwarded-For", "X-Real-Ip")


def init_sentry(dsn: str, environment: str = "production", release: Optional[str] = None) -> bool:
    """
    Turn on Sentry reporting. Returns False (and stays log-only) without a DSN.

    Validation and rate-limit errors are expected traffic and never reported.
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        traces_sample_rate=0.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        ignore_errors=[EventValidationError, RateLimitedError],
        before_send=_before_send,
    )
    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag events with the request id and drop client address data."""
    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    request = event.get("request")
    if request:
        headers = request.get("headers", {})
        for name in _ADDRESS_HEADERS:
            headers.pop(name, None)
        request.pop("env", None)

    return event


def _report(
    send: Callable[[], Optional[str]],
    extras: Dict[str, Any],
    level: str,
    fingerprint: Optional[List[str]] = None,
) -> Optional[str]:
    """Run a Sentry capture inside a scope carrying ``extras``."""
    if not _sentry_initialized:
        return None
    with sentry_sdk.new_scope() as scope:
        for key, value in extras.items():
            if value is not None:
                scope.set_extra(key, value)
        if fingerprint:
            scope.fingerprint = fingerprint
        scope.set_level(level)
        return send()


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[List[str]] = None,
) -> Optional[str]:
    """
    Log an exception with request context and forward it to Sentry.

    Returns the Sentry event id, or None when Sentry is off.
    """
    extras = {
        **get_context_dict(),
        "error_type": type(exc).__name__,
        "captured_at": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }
    logger.error("Exception captured", exc_info=exc, **extras)
    return _report(lambda: sentry_sdk.capture_exception(exc), extras, level, fingerprint)


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
) -> Optional[str]:
    """Log a notable non-exception event and forward it to Sentry."""
    extras = {**get_context_dict(), **(context or {})}
    getattr(logger, level, logger.info)(message, **extras)
    return _report(lambda: sentry_sdk.capture_message(message, level=level), extras, level)


class ErrorHandler:
    """
    Capture errors raised inside a block.

    Usage:
        # Isolate a failure: log + Sentry, then carry on
        with ErrorHandler("process_event", context={"session_id": sid}) as handler:
            ...
        if handler.error is not None:
            ...

        # Capture, then let it propagate
        with ErrorHandler("finalize_sessions", reraise=True):
            ...
    """

    def __init__(
        self,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
        capture: bool = True,
        reraise: bool = False,
    ):
        self.operation = operation
        self.context = context or {}
        self.capture = capture
        self.reraise = reraise
        self.error: Optional[Exception] = None
        self.event_id: Optional[str] = None

    def __enter__(self) -> "ErrorHandler":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        # KeyboardInterrupt, CancelledError and friends always propagate
        if not isinstance(exc_val, Exception):
            return False

        self.error = exc_val
        if self.capture:
            self.event_id = capture_exception(
                exc_val,
                context={"operation": self.operation, **self.context},
                fingerprint=[self.operation, type(exc_val).__name__],
            )
        return not self.reraise
