"""
In-memory fixed-window rate limiter for the ingestion endpoint.

Each identifier (``ip:<addr>``, ``project:<id>``) owns a counter and the
time its window resets. The first request after the reset starts a new
window, so a burst straddling a boundary can admit up to ``2 * limit``
requests. That imprecision is accepted; this is not a sliding window.

The store is process-local. Deployments running several workers need a
shared counter store behind the same ``check`` contract.
"""
import asyncio
import math
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from pulse.core.config import settings

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds
    retry_after: int = 0  # whole seconds until reset, set when denied


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window counters keyed by arbitrary strings.

    ``check`` is safe to call from concurrently handled requests (event
    loop and worker threads alike): the read-modify-write of a window
    happens under a lock. A background task owned by the limiter evicts
    elapsed windows; start it with ``start()`` and stop it with ``stop()``.
    """

    def __init__(self, clock: Callable[[], float] = time.time, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        # {identifier: _Window}
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, identifier: str, limit: int, window_seconds: float) -> RateLimitResult:
        """
        Count one request against ``identifier``.

        Returns whether it is allowed, how many requests remain in the
        window and when the window resets.
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(identifier)

            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + window_seconds)
                self._windows[identifier] = window
                return RateLimitResult(allowed=True, remaining=limit - 1, reset_at=window.reset_at)

            if window.count >= limit:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=window.reset_at,
                    retry_after=max(1, math.ceil(window.reset_at - now)),
                )

            window.count += 1
            return RateLimitResult(allowed=True, remaining=limit - window.count, reset_at=window.reset_at)

    def sweep(self) -> int:
        """Discard windows that have already elapsed. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, window in self._windows.items() if window.reset_at < now]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug("Rate limit windows swept", removed=len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def clear(self) -> None:
        """Clear all counters. Used for testing."""
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


# Global rate limiter instance
rate_limiter = RateLimiter(sweep_interval=settings.RATE_LIMIT_SWEEP_SECONDS)
