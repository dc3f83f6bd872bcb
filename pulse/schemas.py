"""
Wire schemas for the collector.

Tracking events arrive in camelCase (``projectId``, ``screenWidth``);
attributes are snake_case in Python.
"""

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class TrackingEvent(BaseModel):
    """One pageview as sent by the browser send queue."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_id: str = Field(..., description="Project the site belongs to")
    session_id: str = Field(..., description="Client-generated session id")
    url: str = Field(..., description="Full page URL")
    referrer: Optional[str] = None
    title: Optional[str] = None
    user_agent: Optional[str] = None
    # Browsers report fractional CSS pixels on zoomed displays
    screen_width: Optional[Union[int, float]] = None
    screen_height: Optional[Union[int, float]] = None
    timezone: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


TrackingEventBatch = TypeAdapter(List[TrackingEvent])


class ErrorResponse(BaseModel):
    error: str
