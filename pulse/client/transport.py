"""
Delivery transports for the client send queue.

Three ways out:
- ``post``: ordinary async POST for live batches (retried by the queue)
- ``beacon``: fire-and-forget delivery that outlives the queue's event
  loop, used for the teardown flush
- ``post_sync``: blocking best-effort POST when no beacon is available
"""

import threading
from typing import Any, Dict, List, Optional

import httpx
import structlog

from pulse.core.errors import TransientDeliveryError

logger = structlog.get_logger(__name__)

Payload = List[Dict[str, Any]]


class Transport:
    async def post(self, url: str, events: Payload) -> int:
        """Send a batch and return the HTTP status. Raises TransientDeliveryError on network failure."""
        raise NotImplementedError

    def beacon(self, url: str, events: Payload) -> bool:
        """Queue a fire-and-forget send. Returns False when unavailable."""
        return False

    def post_sync(self, url: str, events: Payload) -> int:
        raise NotImplementedError


class HttpxTransport(Transport):
    """Transport backed by httpx; beacons are POSTs on a daemon thread."""

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        beacon_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = httpx.URL(base_url)
        self.timeout = timeout
        self.beacon_timeout = beacon_timeout
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def _absolute(self, url: str) -> str:
        return str(self.base_url.join(url))

    async def post(self, url: str, events: Payload) -> int:
        try:
            response = await self._client.post(url, json=events)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"{type(e).__name__}: {e}")
        return response.status_code

    def beacon(self, url: str, events: Payload) -> bool:
        thread = threading.Thread(
            target=self._fire,
            args=(self._absolute(url), events),
            name="pulse-beacon",
            daemon=True,
        )
        thread.start()
        return True

    def _fire(self, url: str, events: Payload) -> None:
        try:
            httpx.post(url, json=events, timeout=self.beacon_timeout)
        except httpx.HTTPError as e:
            # At most once: nothing left to retry with
            logger.debug("Beacon delivery failed", events=len(events), error=str(e))

    def post_sync(self, url: str, events: Payload) -> int:
        try:
            response = httpx.post(self._absolute(url), json=events, timeout=self.beacon_timeout)
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"{type(e).__name__}: {e}")
        return response.status_code

    async def aclose(self) -> None:
        await self._client.aclose()
