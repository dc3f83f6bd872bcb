"""
Tests for the client send queue.

Tests cover:
- Size-triggered and timer-triggered flushes
- Retry with exponential backoff, events kept after retries run out
- Malformed batches (400) are dropped
- Teardown flush through the beacon, with the synchronous fallback
- Do-not-track gate
- Session lifecycle: reuse, expiry, storage and cookie mirroring
- Navigation-driven tracking
"""

import asyncio
import json
from typing import List, Optional
from unittest.mock import patch

import pytest

from pulse.client.navigation import NavigationObserver
from pulse.client.send_queue import SESSION_KEY, ClientConfig, PageContext, SendQueue, generate_session_id
from pulse.client.storage import JsonFileStorage, MemoryCookieJar, MemoryStorage
from pulse.client.transport import Payload, Transport
from pulse.core.errors import TransientDeliveryError


class RecordingTransport(Transport):
    """Transport answering from a scripted list of statuses (last one repeats)."""

    def __init__(self, statuses: Optional[List] = None, beacon_available: bool = True):
        self.statuses = list(statuses or [204])
        self.beacon_available = beacon_available
        self.posts: List[Payload] = []
        self.beacons: List[Payload] = []
        self.sync_posts: List[Payload] = []

    async def post(self, url: str, events: Payload) -> int:
        self.posts.append(events)
        outcome = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def beacon(self, url: str, events: Payload) -> bool:
        if not self.beacon_available:
            return False
        self.beacons.append(events)
        return True

    def post_sync(self, url: str, events: Payload) -> int:
        self.sync_posts.append(events)
        return 204


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Page:
    """Mutable page state handed to the queue as its page provider."""

    def __init__(self, url: str = "https://a.test/", **kwargs):
        self.context = PageContext(url=url, **kwargs)

    def __call__(self) -> PageContext:
        return self.context


def make_queue(transport=None, page=None, clock=None, **config) -> SendQueue:
    config.setdefault("batch_timeout", 10.0)
    config.setdefault("retry_delay", 0.001)
    return SendQueue(
        ClientConfig(project_id="proj_test", **config),
        page or Page(),
        transport or RecordingTransport(),
        clock=clock or FakeClock(),
    )


class TestBatching:
    @pytest.mark.asyncio
    async def test_batch_size_triggers_immediate_flush(self):
        transport = RecordingTransport()
        queue = make_queue(transport)

        for _ in range(10):
            queue.track()
        await queue.wait_idle()

        assert len(transport.posts) == 1
        assert len(transport.posts[0]) == 10
        assert queue.events == []
        assert queue.timer_armed is False
        await queue.stop()

    @pytest.mark.asyncio
    async def test_single_event_waits_for_timer(self):
        transport = RecordingTransport()
        queue = make_queue(transport, batch_timeout=0.05)

        queue.track()
        assert queue.timer_armed is True
        await asyncio.sleep(0)
        assert transport.posts == []

        await asyncio.sleep(0.1)
        await queue.wait_idle()

        assert len(transport.posts) == 1
        assert len(transport.posts[0]) == 1
        assert queue.events == []
        await queue.stop()

    @pytest.mark.asyncio
    async def test_timer_armed_once(self):
        queue = make_queue()

        queue.track()
        timer = queue._timer
        queue.track()

        assert queue._timer is timer
        await queue.stop()

    @pytest.mark.asyncio
    async def test_flush_takes_batch_size_and_rearms_for_rest(self):
        transport = RecordingTransport()
        queue = make_queue(transport)
        for _ in range(5):
            queue.track()
        queue.config.batch_size = 3

        queue.flush()
        assert queue.timer_armed is True
        await queue.wait_idle()

        assert [len(p) for p in transport.posts] == [3]
        assert len(queue.events) == 2
        await queue.stop()

    @pytest.mark.asyncio
    async def test_payload_uses_wire_names(self):
        transport = RecordingTransport()
        page = Page("https://a.test/x", referrer="https://ref.test/", screen_width=1280, screen_height=720)
        queue = make_queue(transport, page=page)

        queue.track()
        await queue.flush()

        sent = transport.posts[0][0]
        assert sent["projectId"] == "proj_test"
        assert sent["sessionId"] == queue.session_id
        assert sent["url"] == "https://a.test/x"
        assert sent["screenWidth"] == 1280
        assert "title" not in sent
        await queue.stop()


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self):
        transport = RecordingTransport([500, TransientDeliveryError("offline"), 204])
        queue = make_queue(transport)

        queue.track()
        assert await queue.flush() is True

        assert len(transport.posts) == 3
        assert queue.events == []
        await queue.stop()

    @pytest.mark.asyncio
    async def test_backoff_doubles_each_attempt(self):
        transport = RecordingTransport([503])
        queue = make_queue(transport, retry_delay=1.0, retry_attempts=3)
        delays = []

        async def fake_sleep(delay):
            delays.append(delay)

        queue.track()
        queue._cancel_timer()
        with patch("pulse.client.send_queue.asyncio.sleep", fake_sleep):
            await queue._send(list(queue._queue))

        assert delays == [1.0, 2.0, 4.0]
        assert len(transport.posts) == 4
        queue._cancel_timer()
        await queue.stop()

    @pytest.mark.asyncio
    async def test_events_kept_after_retries_exhausted(self):
        transport = RecordingTransport([500])
        queue = make_queue(transport, retry_attempts=2)

        queue.track()
        queue.track()
        assert await queue.flush() is False

        assert len(transport.posts) == 3
        assert len(queue.events) == 2
        assert queue.ready_count == 2
        # Swept into the next natural batch
        assert queue.timer_armed is True
        await queue.stop()

    @pytest.mark.asyncio
    async def test_rate_limited_batch_is_retried(self):
        transport = RecordingTransport([429, 204])
        queue = make_queue(transport)

        queue.track()
        assert await queue.flush() is True
        assert len(transport.posts) == 2

        await queue.stop()

    @pytest.mark.asyncio
    async def test_rejected_batch_is_dropped(self):
        transport = RecordingTransport([400])
        queue = make_queue(transport)

        queue.track()
        assert await queue.flush() is False

        assert len(transport.posts) == 1
        assert queue.events == []
        await queue.stop()

    @pytest.mark.asyncio
    async def test_events_tracked_during_send_are_not_lost(self):
        transport = RecordingTransport([500, 204])
        queue = make_queue(transport, retry_delay=0.01)

        queue.track()
        send = queue.flush()
        queue.track()  # arrives while the first batch is in flight
        await send

        assert len(transport.posts[-1]) == 1
        assert len(queue.events) == 1
        await queue.stop()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_teardown_beacons_whole_queue(self):
        transport = RecordingTransport()
        queue = make_queue(transport, batch_size=100)
        for _ in range(15):
            queue.track()

        assert queue.teardown() == 15

        assert len(transport.beacons) == 1
        assert len(transport.beacons[0]) == 15
        assert transport.posts == []
        assert queue.events == []
        assert queue.timer_armed is False

    @pytest.mark.asyncio
    async def test_teardown_falls_back_to_sync_post(self):
        transport = RecordingTransport(beacon_available=False)
        queue = make_queue(transport)
        queue.track()

        queue.teardown()

        assert len(transport.sync_posts) == 1

    @pytest.mark.asyncio
    async def test_teardown_cancels_in_flight_retry(self):
        transport = RecordingTransport([500])
        queue = make_queue(transport, retry_delay=10.0)
        queue.track()
        send = queue.flush()
        await asyncio.sleep(0)  # first attempt fails, task now sleeping before retry

        queue.teardown()

        with pytest.raises(asyncio.CancelledError):
            await send
        assert len(transport.posts) == 1
        assert len(transport.beacons) == 1

    @pytest.mark.asyncio
    async def test_empty_teardown_sends_nothing(self):
        transport = RecordingTransport()
        queue = make_queue(transport)

        assert queue.teardown() == 0
        assert transport.beacons == []

    @pytest.mark.asyncio
    async def test_stop_flushes_and_disarms(self):
        transport = RecordingTransport()
        queue = make_queue(transport)
        queue.track()

        await queue.stop()

        assert len(transport.beacons) == 1
        assert queue.timer_armed is False


class TestDoNotTrack:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("signal", ["1", "yes"])
    async def test_opt_out_blocks_tracking(self, signal):
        transport = RecordingTransport()
        queue = make_queue(transport, page=Page(do_not_track=signal))

        assert queue.track() is None
        queue.teardown()

        assert queue.events == []
        assert transport.beacons == []
        assert queue.session_id is None

    def test_other_values_allow_tracking(self):
        assert PageContext(url="https://a.test/", do_not_track="0").tracking_allowed is True
        assert PageContext(url="https://a.test/").tracking_allowed is True


class TestSessionLifecycle:
    def test_session_id_format(self):
        session_id = generate_session_id(1_700_000_000.5)
        prefix, millis, suffix = session_id.split("_")
        assert prefix == "sess"
        assert millis == "1700000000500"
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix.lower() == suffix

    @pytest.mark.asyncio
    async def test_session_reused_within_timeout(self):
        clock = FakeClock()
        queue = make_queue(clock=clock)

        first = queue.track()
        clock.now += 29 * 60
        second = queue.track()
        clock.now += 29 * 60
        third = queue.track()

        assert first.session_id == second.session_id == third.session_id
        await queue.stop()

    @pytest.mark.asyncio
    async def test_new_session_after_timeout(self):
        clock = FakeClock()
        queue = make_queue(clock=clock)

        first = queue.track()
        clock.now += 31 * 60
        second = queue.track()

        assert first.session_id != second.session_id
        assert second.session_id.startswith("sess_")
        await queue.stop()

    @pytest.mark.asyncio
    async def test_session_persisted_in_storage_and_cookie(self):
        clock = FakeClock()
        storage = MemoryStorage()
        cookies = MemoryCookieJar(clock)
        queue = SendQueue(
            ClientConfig(project_id="proj_test", batch_timeout=10.0),
            Page(),
            RecordingTransport(),
            storage=storage,
            cookies=cookies,
            clock=clock,
        )

        event = queue.track()

        stored = json.loads(storage.get(SESSION_KEY))
        assert stored == {"sessionId": event.session_id, "lastActivity": int(clock.now * 1000)}
        assert cookies.get(SESSION_KEY) == event.session_id

        clock.now += 30 * 60 + 1
        assert cookies.get(SESSION_KEY) is None
        await queue.stop()

    @pytest.mark.asyncio
    async def test_session_survives_page_load(self, tmp_path):
        """A new queue on the next page load adopts the stored session."""
        clock = FakeClock()
        storage = JsonFileStorage(tmp_path / "state.json")
        config = ClientConfig(project_id="proj_test", batch_timeout=10.0)

        first_page = SendQueue(config, Page(), RecordingTransport(), storage=storage, clock=clock)
        first = first_page.track()
        await first_page.stop()

        clock.now += 5 * 60
        second_page = SendQueue(config, Page(), RecordingTransport(), storage=storage, clock=clock)
        second = second_page.track()
        await second_page.stop()

        assert second.session_id == first.session_id
        assert json.loads(storage.get(SESSION_KEY))["lastActivity"] == int(clock.now * 1000)

    @pytest.mark.asyncio
    async def test_stale_stored_session_not_adopted(self):
        clock = FakeClock()
        storage = MemoryStorage()
        storage.set(SESSION_KEY, json.dumps({"sessionId": "sess_old", "lastActivity": int((clock.now - 3600) * 1000)}))
        queue = SendQueue(ClientConfig(project_id="proj_test"), Page(), RecordingTransport(), storage=storage, clock=clock)

        event = queue.track()

        assert event.session_id != "sess_old"
        await queue.stop()

    @pytest.mark.asyncio
    async def test_corrupt_stored_session_ignored(self):
        storage = MemoryStorage()
        storage.set(SESSION_KEY, "{not json")
        queue = SendQueue(ClientConfig(project_id="proj_test"), Page(), RecordingTransport(), storage=storage, clock=FakeClock())

        assert queue.track().session_id.startswith("sess_")
        await queue.stop()

    @pytest.mark.asyncio
    async def test_on_visible_replaces_expired_session(self):
        clock = FakeClock()
        queue = make_queue(clock=clock)
        first = queue.track()

        clock.now += 10 * 60
        queue.on_visible()
        assert queue.session_id == first.session_id

        clock.now += 31 * 60
        queue.on_visible()
        assert queue.session_id != first.session_id
        await queue.stop()


class TestNavigationTracking:
    @pytest.mark.asyncio
    async def test_start_tracks_and_follows_navigation(self):
        page = Page("https://a.test/")
        navigation = NavigationObserver(initial_url="https://a.test/")
        queue = SendQueue(
            ClientConfig(project_id="proj_test", batch_timeout=10.0),
            page,
            RecordingTransport(),
            navigation=navigation,
            clock=FakeClock(),
        )

        queue.start()
        for url in ["https://a.test/pricing", "https://a.test/pricing", "https://a.test/docs"]:
            page.context = PageContext(url=url)
            navigation.push_state(url)
        page.context = PageContext(url="https://a.test/pricing")
        navigation.pop_state("https://a.test/pricing")

        assert [e.url for e in queue.events] == [
            "https://a.test/",
            "https://a.test/pricing",
            "https://a.test/docs",
            "https://a.test/pricing",
        ]

        await queue.stop()
        navigation.push_state("https://a.test/after-stop")
        assert queue.events == []

    @pytest.mark.asyncio
    async def test_replace_state_to_landing_url_is_not_a_second_view(self):
        page = Page("https://a.test/")
        navigation = NavigationObserver()
        queue = SendQueue(
            ClientConfig(project_id="proj_test", batch_timeout=10.0),
            page,
            RecordingTransport(),
            navigation=navigation,
            clock=FakeClock(),
        )

        queue.start()
        navigation.replace_state("https://a.test/")

        assert [e.url for e in queue.events] == ["https://a.test/"]
        assert navigation.last_url == "https://a.test/"
        await queue.stop()
