"""
Navigation observer for single-page apps.

The host environment reports history changes (programmatic push/replace
and back/forward pops); subscribers hear about each distinct URL once.
"""

from typing import Callable, List, Optional

NavigationCallback = Callable[[str], None]


class NavigationObserver:
    def __init__(self, initial_url: Optional[str] = None):
        self._last_url = initial_url
        self._subscribers: List[NavigationCallback] = []

    @property
    def last_url(self) -> Optional[str]:
        return self._last_url

    def subscribe(self, callback: NavigationCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def observe(self, url: str) -> None:
        """Record the current URL without notifying subscribers."""
        self._last_url = url

    def push_state(self, url: str) -> bool:
        return self._navigated(url)

    def replace_state(self, url: str) -> bool:
        return self._navigated(url)

    def pop_state(self, url: str) -> bool:
        return self._navigated(url)

    def _navigated(self, url: str) -> bool:
        # No-op history calls (same URL) are not page views
        if url == self._last_url:
            return False
        self._last_url = url
        for callback in list(self._subscribers):
            callback(url)
        return True
