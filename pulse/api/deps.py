from typing import Optional

from pulse.core.rate_limit import RateLimiter, rate_limiter
from pulse.db import engine
from pulse.services.event_processor import EventProcessor
from pulse.services.geo import get_geo_resolver

_event_processor: Optional[EventProcessor] = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide admission limiter shared by every request."""
    return rate_limiter


def get_event_processor() -> EventProcessor:
    """Lazily build the processor bound to the application engine."""
    global _event_processor
    if _event_processor is None:
        _event_processor = EventProcessor(engine, get_geo_resolver())
    return _event_processor


async def close_event_processor() -> None:
    global _event_processor
    if _event_processor is not None:
        await _event_processor.geo_resolver.aclose()
        _event_processor = None
