"""
Analytics models written by the event processor.

Device, Referrer and Geo are deduplicated per project by their unique
keys. Key columns are NOT NULL so that missing values still dedupe:
absent screen dimensions are stored as 0 and an absent city as "".
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from pulse.core.typing import utc_now


class Device(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint(
            "project_id", "browser", "os", "device_type", "screen_width", "screen_height",
            name="uq_device_identity",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    browser: str
    browser_version: Optional[str] = Field(default=None)
    os: str
    os_version: Optional[str] = Field(default=None)
    device_type: str  # desktop, mobile, tablet
    screen_width: int = Field(default=0)
    screen_height: int = Field(default=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Referrer(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("project_id", "domain", name="uq_referrer_domain"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    domain: str
    url: str  # First full referrer URL seen for the domain
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Geo(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("project_id", "country", "city", name="uq_geo_location"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    country: str
    city: str = Field(default="")
    region: Optional[str] = Field(default=None)
    timezone: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AnalyticsSession(SQLModel, table=True):
    """One visit, stitched together from events sharing a client session id."""

    __tablename__ = "analytics_session"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    entry_page: str
    exit_page: str
    device_id: Optional[int] = Field(default=None, foreign_key="device.id")
    referrer_id: Optional[int] = Field(default=None, foreign_key="referrer.id")
    geo_id: Optional[int] = Field(default=None, foreign_key="geo.id")
    page_views: int = Field(default=1)
    is_bounce: bool = Field(default=True)
    started_at: datetime = Field(default_factory=utc_now, index=True)
    last_activity_at: datetime = Field(default_factory=utc_now, index=True)
    ended_at: Optional[datetime] = Field(default=None)
    duration: Optional[int] = Field(default=None)  # seconds


class Event(SQLModel, table=True):
    """Append-only record of a tracked action."""

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="project.id", index=True)
    session_id: str = Field(index=True)
    type: str = Field(default="pageview", index=True)
    url: str
    path: str = Field(index=True)
    referrer: Optional[str] = Field(default=None)
    title: Optional[str] = Field(default=None)
    timestamp: datetime = Field(default_factory=utc_now, index=True)
