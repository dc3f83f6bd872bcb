"""
Tests for session finalization.
"""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from pulse.core.typing import as_utc
from pulse.models import AnalyticsSession
from pulse.services.sessions import finalize_idle_sessions

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
TIMEOUT = timedelta(minutes=30)


def add_session(session: Session, session_id: str, started: datetime, last: datetime, **extra) -> AnalyticsSession:
    record = AnalyticsSession(
        session_id=session_id,
        project_id="proj_test",
        entry_page="/",
        exit_page="/",
        started_at=started,
        last_activity_at=last,
        **extra,
    )
    session.add(record)
    session.commit()
    return record


class TestFinalizeIdleSessions:
    def test_idle_session_is_closed(self, test_session, project):
        add_session(test_session, "sess_idle", NOW - timedelta(hours=2), NOW - timedelta(hours=1, minutes=55))

        closed = finalize_idle_sessions(test_session, NOW, TIMEOUT)

        assert closed == 1
        record = test_session.exec(select(AnalyticsSession)).one()
        assert as_utc(record.ended_at) == NOW - timedelta(hours=1, minutes=55)
        assert record.duration == 5 * 60

    def test_active_session_left_open(self, test_session, project):
        add_session(test_session, "sess_active", NOW - timedelta(minutes=40), NOW - timedelta(minutes=10))

        assert finalize_idle_sessions(test_session, NOW, TIMEOUT) == 0
        assert test_session.exec(select(AnalyticsSession)).one().ended_at is None

    def test_already_finalized_session_untouched(self, test_session, project):
        ended = NOW - timedelta(hours=3)
        add_session(
            test_session,
            "sess_done",
            NOW - timedelta(hours=4),
            ended,
            ended_at=ended,
            duration=3600,
        )

        assert finalize_idle_sessions(test_session, NOW, TIMEOUT) == 0
        assert test_session.exec(select(AnalyticsSession)).one().duration == 3600

    def test_single_event_session_has_zero_duration(self, test_session, project):
        moment = NOW - timedelta(hours=1)
        add_session(test_session, "sess_bounce", moment, moment)

        finalize_idle_sessions(test_session, NOW, TIMEOUT)

        assert test_session.exec(select(AnalyticsSession)).one().duration == 0

    def test_mixed_sessions(self, test_session, project):
        for i in range(3):
            add_session(test_session, f"sess_idle_{i}", NOW - timedelta(hours=2), NOW - timedelta(hours=1))
        add_session(test_session, "sess_live", NOW - timedelta(minutes=5), NOW)

        assert finalize_idle_sessions(test_session, NOW, TIMEOUT) == 3
        open_sessions = test_session.exec(
            select(AnalyticsSession).where(AnalyticsSession.ended_at.is_(None))
        ).all()
        assert [s.session_id for s in open_sessions] == ["sess_live"]
