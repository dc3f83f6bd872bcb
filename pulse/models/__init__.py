from .project import Project
from .analytics import Device, Referrer, Geo, AnalyticsSession, Event

__all__ = [
    "Project",
    "Device",
    "Referrer",
    "Geo",
    "AnalyticsSession",
    "Event",
]
