"""
Client-local state for the send queue.

The session id and last activity live in a durable key/value store and
are mirrored into a short-lived cookie so a server could read them.
"""

import json
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple


class KeyValueStore:
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(KeyValueStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage(KeyValueStore):
    """Key/value entries persisted to a JSON file, surviving process restarts."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def _read(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)


class CookieJar:
    def set(self, name: str, value: str, max_age: int, path: str = "/") -> None:
        raise NotImplementedError

    def get(self, name: str) -> Optional[str]:
        raise NotImplementedError


class MemoryCookieJar(CookieJar):
    """Cookies with max-age expiry, kept in memory."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        # {name: (value, expires_at)}
        self._cookies: Dict[str, Tuple[str, float]] = {}

    def set(self, name: str, value: str, max_age: int, path: str = "/") -> None:
        self._cookies[name] = (value, self._clock() + max_age)

    def get(self, name: str) -> Optional[str]:
        entry = self._cookies.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._cookies[name]
            return None
        return value
