from datetime import timedelta

import anyio
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from pulse.core.config import settings
from pulse.core.errors import ErrorHandler
from pulse.core.typing import utc_now
from pulse.db import engine
from pulse.services.sessions import finalize_idle_sessions

logger = structlog.get_logger(__name__)

scheduler = AsyncIOScheduler()


def _finalize_sessions_sync() -> int:
    with Session(engine) as session:
        return finalize_idle_sessions(
            session,
            now=utc_now(),
            idle_timeout=timedelta(seconds=settings.SESSION_TIMEOUT_SECONDS),
        )


async def job_finalize_sessions():
    """Close sessions idle for longer than the session timeout."""
    with ErrorHandler("job_finalize_sessions"):
        closed = await anyio.to_thread.run_sync(_finalize_sessions_sync)
        logger.debug("Session finalization run complete", closed=closed)


def start_scheduler():
    # - max_instances=1: Prevent overlapping runs
    # - coalesce=True: If multiple runs were missed, only run once when catching up
    scheduler.add_job(
        job_finalize_sessions,
        IntervalTrigger(seconds=settings.SESSION_FINALIZE_INTERVAL_SECONDS),
        id="job_finalize_sessions",
        max_instances=1,
        misfire_grace_time=settings.SESSION_FINALIZE_INTERVAL_SECONDS,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started", jobs=[job.id for job in scheduler.get_jobs()])


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
