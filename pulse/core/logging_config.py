"""
structlog setup for the collector.

Log lines are key/value events. The renderer depends on where they go:
JSON for log shipping (production, or LOG_JSON=true), a console renderer
for local runs. Request ids bound by the middleware are merged into every
line emitted while the request is handled.

    logger = structlog.get_logger(__name__)
    logger.info("Batch accepted", events=3, sessions=2, failed=0)
"""

import logging
import sys
from typing import Any, List

import structlog

from pulse.core.config import settings

# Libraries that log every request they make at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler", "asyncio")


def _renderer() -> Any:
    if settings.ENVIRONMENT == "production" or settings.LOG_JSON:
        return structlog.processors.JSONRenderer()
    # No ANSI colors in captured pytest output
    return structlog.dev.ConsoleRenderer(colors="pytest" not in sys.modules)


def configure_logging(level: int = logging.INFO) -> None:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    renderer = _renderer()
    if isinstance(renderer, structlog.processors.JSONRenderer):
        processors.append(structlog.processors.format_exc_info)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and SQLAlchemy use stdlib logging
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
