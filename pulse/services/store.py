"""
Analytics store: atomic upserts over a SQLModel session.

Every dimension write is a single ``INSERT ... ON CONFLICT DO UPDATE`` so
two requests seeing the same device/referrer/geo/session for the first
time cannot create duplicate rows. PostgreSQL and SQLite are supported.
"""

from datetime import datetime
from typing import Iterable, Optional, Set

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

from pulse.models.analytics import AnalyticsSession, Device, Event, Geo, Referrer
from pulse.models.project import Project
from pulse.services.device import DeviceInfo
from pulse.services.geo import GeoLocation

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class AnalyticsStore:
    def __init__(self, session: Session):
        self.session = session
        dialect = session.get_bind().dialect.name
        try:
            self._insert = _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise RuntimeError(f"Upserts are not supported on the {dialect!r} dialect") from None

    def existing_project_ids(self, project_ids: Iterable[str]) -> Set[str]:
        ids = list(project_ids)
        if not ids:
            return set()
        return set(self.session.exec(select(Project.id).where(Project.id.in_(ids))).all())

    def upsert_device(
        self,
        project_id: str,
        info: DeviceInfo,
        screen_width: Optional[float],
        screen_height: Optional[float],
        now: datetime,
    ) -> int:
        key = {
            "project_id": project_id,
            "browser": info.browser,
            "os": info.os,
            "device_type": info.device_type,
            "screen_width": int(screen_width or 0),
            "screen_height": int(screen_height or 0),
        }
        stmt = self._insert(Device).values(
            **key,
            browser_version=info.browser_version,
            os_version=info.os_version,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(index_elements=list(key), set_={"updated_at": now})
        self.session.execute(stmt)
        return self._id_for(Device, key)

    def upsert_referrer(self, project_id: str, domain: str, url: str, now: datetime) -> int:
        key = {"project_id": project_id, "domain": domain}
        stmt = self._insert(Referrer).values(**key, url=url, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(index_elements=list(key), set_={"updated_at": now})
        self.session.execute(stmt)
        return self._id_for(Referrer, key)

    def upsert_geo(self, project_id: str, geo: GeoLocation, now: datetime) -> int:
        key = {"project_id": project_id, "country": geo.country, "city": geo.city or ""}
        stmt = self._insert(Geo).values(
            **key,
            region=geo.region,
            timezone=geo.timezone,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(index_elements=list(key), set_={"updated_at": now})
        self.session.execute(stmt)
        return self._id_for(Geo, key)

    def stitch_session(
        self,
        session_id: str,
        project_id: str,
        path: str,
        device_id: int,
        referrer_id: Optional[int],
        geo_id: int,
        now: datetime,
    ) -> AnalyticsSession:
        """
        Create the session on its first event, otherwise advance it.

        A continuing event bumps page_views, clears is_bounce, moves
        exit_page and reopens a finalized session (ended_at/duration reset).
        Entry page and dimension links keep their first-event values.
        """
        table = AnalyticsSession.__table__
        stmt = self._insert(AnalyticsSession).values(
            session_id=session_id,
            project_id=project_id,
            entry_page=path,
            exit_page=path,
            device_id=device_id,
            referrer_id=referrer_id,
            geo_id=geo_id,
            page_views=1,
            is_bounce=True,
            started_at=now,
            last_activity_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id"],
            set_={
                "page_views": table.c.page_views + 1,
                "is_bounce": False,
                "exit_page": stmt.excluded.exit_page,
                "last_activity_at": now,
                "ended_at": None,
                "duration": None,
            },
        )
        self.session.execute(stmt)
        record = self.get_session_record(session_id)
        # Pick up the values written by the statement above
        self.session.refresh(record)
        return record

    def add_event(
        self,
        project_id: str,
        session_id: str,
        url: str,
        path: str,
        referrer: Optional[str],
        title: Optional[str],
        now: datetime,
        event_type: str = "pageview",
    ) -> Event:
        event = Event(
            project_id=project_id,
            session_id=session_id,
            type=event_type,
            url=url,
            path=path,
            referrer=referrer or None,
            title=title or None,
            timestamp=now,
        )
        self.session.add(event)
        return event

    def get_session_record(self, session_id: str) -> Optional[AnalyticsSession]:
        return self.session.exec(
            select(AnalyticsSession).where(AnalyticsSession.session_id == session_id)
        ).first()

    def _id_for(self, model, key: dict) -> int:
        stmt = select(model.id)
        for column, value in key.items():
            stmt = stmt.where(getattr(model, column) == value)
        return self.session.exec(stmt).one()
