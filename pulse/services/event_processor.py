"""
Event processor: turns one admitted tracking event into persisted rows.

Per event:
1. Anonymize the caller address and pick the user agent (event field
   first, request header second)
2. Classify the device and resolve a coarse location
3. Derive the referrer domain and the normalized page path
4. Upsert Device, Referrer (when a domain was derived) and Geo
5. Stitch the session (create on first event, advance afterwards)
6. Append the Event row

Storage failures are not retried here; they propagate to the caller,
which isolates them per event.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional
from urllib.parse import urlsplit

import anyio
import structlog
from sqlalchemy.engine import Engine
from sqlmodel import Session

from pulse.core.errors import ProcessingError
from pulse.core.typing import utc_now
from pulse.schemas import TrackingEvent
from pulse.services.device import DeviceInfo, parse_user_agent
from pulse.services.geo import GeoLocation, GeoResolver, StaticGeoResolver
from pulse.services.ip import anonymize_ip, get_client_ip
from pulse.services.store import AnalyticsStore

logger = structlog.get_logger(__name__)


def extract_referrer_domain(referrer: Optional[str]) -> Optional[str]:
    """Hostname of the referrer URL, or None when absent or unparseable."""
    if not referrer:
        return None
    try:
        parts = urlsplit(referrer)
    except ValueError:
        return None
    if not parts.scheme or not parts.hostname:
        return None
    return parts.hostname


def normalize_path(url: str) -> str:
    """
    Path plus query string of an absolute URL.

    Relative or malformed URLs are kept as sent.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme:
        return url
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


@dataclass
class ProcessedEvent:
    session_id: str
    path: str
    page_views: int
    is_bounce: bool
    new_session: bool


class EventProcessor:
    def __init__(
        self,
        engine: Engine,
        geo_resolver: Optional[GeoResolver] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.geo_resolver = geo_resolver or StaticGeoResolver()
        self.clock = clock

    async def process(self, event: TrackingEvent, headers: Mapping[str, str]) -> ProcessedEvent:
        ip = anonymize_ip(get_client_ip(headers))
        user_agent = event.user_agent or headers.get("user-agent") or ""

        try:
            device = parse_user_agent(user_agent)
            geo = await self.geo_resolver.lookup(ip)
            # Blocking database work runs in a worker thread
            return await anyio.to_thread.run_sync(self.persist, event, device, geo)
        except Exception as e:
            raise ProcessingError(event.session_id, e) from e

    def persist(self, event: TrackingEvent, device: DeviceInfo, geo: GeoLocation) -> ProcessedEvent:
        """Write all rows for one event in a single transaction."""
        now = self.clock()
        path = normalize_path(event.url)
        referrer_domain = extract_referrer_domain(event.referrer)

        with Session(self.engine) as session:
            store = AnalyticsStore(session)

            device_id = store.upsert_device(
                event.project_id, device, event.screen_width, event.screen_height, now
            )
            referrer_id = None
            if referrer_domain:
                referrer_id = store.upsert_referrer(event.project_id, referrer_domain, event.referrer, now)
            geo_id = store.upsert_geo(event.project_id, geo, now)

            record = store.stitch_session(
                session_id=event.session_id,
                project_id=event.project_id,
                path=path,
                device_id=device_id,
                referrer_id=referrer_id,
                geo_id=geo_id,
                now=now,
            )
            store.add_event(
                project_id=event.project_id,
                session_id=event.session_id,
                url=event.url,
                path=path,
                referrer=event.referrer,
                title=event.title,
                now=now,
            )
            result = ProcessedEvent(
                session_id=event.session_id,
                path=path,
                page_views=record.page_views,
                is_bounce=record.is_bounce,
                new_session=record.page_views == 1,
            )
            session.commit()

        logger.debug(
            "Event processed",
            project_id=event.project_id,
            session_id=event.session_id,
            path=path,
            page_views=result.page_views,
        )
        return result
