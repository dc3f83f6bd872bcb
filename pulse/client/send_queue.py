"""
Client send queue.

Buffers pageview events, sends them in batches and retries failed sends
with exponential backoff. Delivery guarantees:

- A batch is sent when BATCH_SIZE events are ready or BATCH_TIMEOUT after
  the first unsent event, whichever comes first
- A failed batch stays queued: after the retries are used up it is swept
  into the next scheduled batch instead of being dropped
- A batch the collector rejects as malformed (400) is dropped
- ``teardown()`` sends everything still queued once, fire-and-forget

All mutation happens on one asyncio loop, so no locking is needed.
"""

import asyncio
import json
import random
import string
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

import structlog

from pulse.client.navigation import NavigationObserver
from pulse.client.storage import CookieJar, KeyValueStore, MemoryCookieJar, MemoryStorage
from pulse.client.transport import Transport
from pulse.core.errors import TransientDeliveryError
from pulse.schemas import TrackingEvent

logger = structlog.get_logger(__name__)

SESSION_KEY = "_pulse_session"
DO_NOT_TRACK_VALUES = ("1", "yes")


@dataclass
class ClientConfig:
    project_id: str
    collector_url: str = "/api/collect"
    batch_size: int = 10
    batch_timeout: float = 5.0  # seconds
    session_timeout: float = 30 * 60  # seconds
    retry_attempts: int = 3
    retry_delay: float = 1.0  # base delay, doubled per attempt


@dataclass
class PageContext:
    """What the host knows about the current page."""

    url: str
    referrer: Optional[str] = None
    title: Optional[str] = None
    user_agent: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    timezone: Optional[str] = None
    do_not_track: Optional[str] = None

    @property
    def tracking_allowed(self) -> bool:
        return self.do_not_track not in DO_NOT_TRACK_VALUES


@dataclass(eq=False)
class _Queued:
    event: TrackingEvent
    in_flight: bool = False


def generate_session_id(now: float) -> str:
    """sess_<epoch ms>_<9 random base36 chars>"""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"sess_{int(now * 1000)}_{suffix}"


class SendQueue:
    """
    Durable-ish batching queue for one page.

    Lifecycle: ``start()`` tracks the initial page view and subscribes to
    navigation; ``stop()`` unsubscribes and performs the teardown flush.
    Must be used from a running asyncio loop.
    """

    def __init__(
        self,
        config: ClientConfig,
        page: Callable[[], PageContext],
        transport: Transport,
        storage: Optional[KeyValueStore] = None,
        cookies: Optional[CookieJar] = None,
        navigation: Optional[NavigationObserver] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._page = page
        self._transport = transport
        self._storage = storage or MemoryStorage()
        self._cookies = cookies or MemoryCookieJar(clock)
        self._navigation = navigation
        self._clock = clock

        self._queue: List[_Queued] = []
        self._timer: Optional[asyncio.Task] = None
        self._sends: Set[asyncio.Task] = set()
        self._session_id: Optional[str] = None
        self._last_activity: float = clock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._stopped = False

    # Lifecycle

    def start(self) -> None:
        self._stopped = False
        if self._navigation is not None and self._unsubscribe is None:
            # The landing page is tracked below, a replaceState to it is not a new view
            self._navigation.observe(self._page().url)
            self._unsubscribe = self._navigation.subscribe(lambda url: self.track())
        self.track()

    async def stop(self) -> None:
        """Detach from navigation, flush what is left and wait for cancelled tasks."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._stopped = True

        pending = [t for t in (self._timer, *self._sends) if t is not None]
        self.teardown()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task

    # Queue state

    @property
    def events(self) -> List[TrackingEvent]:
        return [q.event for q in self._queue]

    @property
    def ready_count(self) -> int:
        return sum(1 for q in self._queue if not q.in_flight)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    # Session lifecycle

    def _load_stored_session(self) -> Optional[dict]:
        raw = self._storage.get(SESSION_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or "sessionId" not in data or "lastActivity" not in data:
            return None
        return data

    def _save_session(self) -> None:
        self._storage.set(
            SESSION_KEY,
            json.dumps({"sessionId": self._session_id, "lastActivity": int(self._last_activity * 1000)}),
        )
        self._cookies.set(SESSION_KEY, self._session_id, max_age=int(self.config.session_timeout))

    def _expire_if_idle(self, now: float) -> bool:
        if self._session_id is not None and now - self._last_activity > self.config.session_timeout:
            logger.debug("Session expired", session_id=self._session_id)
            self._session_id = None
            self._storage.remove(SESSION_KEY)
            return True
        return False

    def _resolve_session_id(self) -> str:
        """Reuse the live session id, adopt a stored one, or mint a new one."""
        now = self._clock()
        self._expire_if_idle(now)
        if self._session_id is not None:
            return self._session_id

        stored = self._load_stored_session()
        if stored and now - stored["lastActivity"] / 1000 < self.config.session_timeout:
            self._session_id = stored["sessionId"]
            self._last_activity = stored["lastActivity"] / 1000
            return self._session_id

        self._session_id = generate_session_id(now)
        self._last_activity = now
        self._save_session()
        return self._session_id

    def on_visible(self) -> None:
        """Page became visible again: start a fresh session if the old one went idle."""
        if self._expire_if_idle(self._clock()):
            self._resolve_session_id()

    # Tracking

    def track(self) -> Optional[TrackingEvent]:
        """Queue a pageview for the current page and schedule delivery."""
        page = self._page()
        if not page.tracking_allowed:
            return None

        session_id = self._resolve_session_id()
        event = TrackingEvent(
            project_id=self.config.project_id,
            session_id=session_id,
            url=page.url,
            referrer=page.referrer or None,
            title=page.title or None,
            user_agent=page.user_agent,
            screen_width=page.screen_width,
            screen_height=page.screen_height,
            timezone=page.timezone,
        )
        self._queue.append(_Queued(event))

        self._last_activity = self._clock()
        self._save_session()

        if self.ready_count >= self.config.batch_size:
            self.flush()
        else:
            self._arm_timer()
        return event

    # Batching

    def _arm_timer(self) -> None:
        if self._stopped or self.timer_armed:
            return
        self._timer = asyncio.create_task(self._flush_after_timeout())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _flush_after_timeout(self) -> None:
        await asyncio.sleep(self.config.batch_timeout)
        # Clear the handle first so flush() does not cancel this task
        self._timer = None
        self.flush()

    def flush(self) -> Optional[asyncio.Task]:
        """Send up to batch_size ready events. Re-arms the timer if more remain."""
        self._cancel_timer()
        ready = [q for q in self._queue if not q.in_flight]
        if not ready:
            return None

        batch = ready[: self.config.batch_size]
        for queued in batch:
            queued.in_flight = True

        task = asyncio.create_task(self._send(batch))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

        if len(ready) > len(batch):
            self._arm_timer()
        return task

    def _remove(self, batch: List[_Queued]) -> None:
        self._queue = [q for q in self._queue if q not in batch]

    def _release(self, batch: List[_Queued]) -> None:
        for queued in batch:
            queued.in_flight = False

    async def _send(self, batch: List[_Queued]) -> bool:
        """Deliver one batch, retrying transient failures with exponential backoff."""
        payload = [q.event.to_wire() for q in batch]
        attempt = 0
        try:
            while True:
                try:
                    status = await self._transport.post(self.config.collector_url, payload)
                    if 200 <= status < 300:
                        self._remove(batch)
                        return True
                    if status == 400:
                        # Malformed batches are never re-queued
                        logger.warning("Collector rejected batch", events=len(batch))
                        self._remove(batch)
                        return False
                    raise TransientDeliveryError(f"HTTP {status}", status)
                except TransientDeliveryError as e:
                    if attempt >= self.config.retry_attempts:
                        logger.warning(
                            "Failed to send events after retries",
                            events=len(batch),
                            attempts=attempt + 1,
                            error=e.reason,
                        )
                        break
                    delay = self.config.retry_delay * 2**attempt
                    attempt += 1
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._release(batch)
            raise

        # Keep the events for the next natural batch
        self._release(batch)
        self._arm_timer()
        return False

    async def wait_idle(self) -> None:
        """Wait until no batch is in flight."""
        while self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)

    # Teardown

    def teardown(self) -> int:
        """
        Page is going away: cancel scheduled work and send every queued
        event once. Returns how many events were handed to the transport.
        """
        self._cancel_timer()
        for task in list(self._sends):
            task.cancel()

        if not self._queue:
            return 0

        payload = [q.event.to_wire() for q in self._queue]
        self._queue = []

        if not self._transport.beacon(self.config.collector_url, payload):
            try:
                self._transport.post_sync(self.config.collector_url, payload)
            except TransientDeliveryError as e:
                logger.warning("Teardown flush failed", events=len(payload), error=e.reason)
        return len(payload)
