"""
Session finalization.

A session is open while events keep arriving. Once it has been idle for
longer than the session timeout it is closed: ended_at is set to the
time of its last event and duration to the span from its first event.
A later event for the same session id reopens it.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import update
from sqlmodel import Session, select

from pulse.core.typing import as_utc
from pulse.models.analytics import AnalyticsSession

logger = structlog.get_logger(__name__)


def finalize_idle_sessions(session: Session, now: datetime, idle_timeout: timedelta) -> int:
    """Close every open session idle for longer than ``idle_timeout``. Returns the count."""
    cutoff = as_utc(now) - idle_timeout
    idle = session.exec(
        select(AnalyticsSession.id, AnalyticsSession.started_at, AnalyticsSession.last_activity_at)
        .where(AnalyticsSession.ended_at.is_(None))
        .where(AnalyticsSession.last_activity_at < cutoff)
    ).all()

    closed = 0
    for row in idle:
        duration = int((as_utc(row.last_activity_at) - as_utc(row.started_at)).total_seconds())
        result = session.execute(
            update(AnalyticsSession)
            .where(AnalyticsSession.id == row.id)
            # Skip rows reopened by an event since the select above
            .where(AnalyticsSession.last_activity_at == row.last_activity_at)
            .values(ended_at=row.last_activity_at, duration=duration)
        )
        closed += result.rowcount
    session.commit()

    if closed:
        logger.info("Idle sessions finalized", count=closed, cutoff=cutoff.isoformat())
    return closed
