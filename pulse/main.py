from typing import Any, cast

import anyio
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pulse.api import collect
from pulse.api.deps import close_event_processor
from pulse.core.config import settings
from pulse.core.errors import CollectorError, RateLimitedError, capture_exception, init_sentry
from pulse.core.logging_config import configure_logging
from pulse.core.rate_limit import rate_limiter
from pulse.core.scheduler import start_scheduler, stop_scheduler
from pulse.db import create_db_and_tables
from pulse.middleware.context import RequestContextMiddleware

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Limit AnyIO worker threads so batch fan-out cannot exhaust database connections
    thread_limiter = anyio.to_thread.current_default_thread_limiter()
    max_workers = max(1, settings.THREADPOOL_MAX_WORKERS)
    if thread_limiter.total_tokens != max_workers:
        logger.info(
            "Configuring AnyIO thread limiter",
            previous=thread_limiter.total_tokens,
            workers=max_workers,
        )
        thread_limiter.total_tokens = max_workers

    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    rate_limiter.start()
    if settings.RUN_SCHEDULER:
        start_scheduler()
    else:
        logger.info("RUN_SCHEDULER is false, skipping session finalization in this process")

    logger.info("Collector started", project=settings.PROJECT_NAME, environment=settings.ENVIRONMENT)
    try:
        yield
    finally:
        stop_scheduler()
        await rate_limiter.stop()
        await close_event_processor()
        logger.info("Collector stopped")


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(cast(Any, RequestContextMiddleware))

# Tracking snippets run on arbitrary customer sites
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(CollectorError)
async def collector_error_handler(request: Request, exc: CollectorError):
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    capture_exception(exc, context={"path": request.url.path, "method": request.method})
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


app.include_router(collect.router, prefix=settings.API_PREFIX, tags=["collect"])


@app.get("/health")
def health():
    """Basic health check endpoint."""
    return {"status": "healthy"}
