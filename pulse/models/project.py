"""
Project model.

Projects are managed by the dashboard; the collector only checks that an
incoming project id exists.
"""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from pulse.core.typing import utc_now


class Project(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    domain: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
