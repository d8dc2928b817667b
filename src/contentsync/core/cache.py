"""Explicit caches injected into sync components.

``RequestCache`` lives for one request and never expires entries.
``TTLCache`` spans requests and expires entries after a fixed time; it
is used for remote catalog lookups, where callers accept staleness
within the window.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable, Protocol

_MISSING = object()


class Cache(Protocol):
    def get(self, key: Hashable, default: Any = None) -> Any: ...

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None: ...

    def invalidate(self, key: Hashable | None = None) -> None: ...


class RequestCache:
    """Plain dict cache without expiry."""

    def __init__(self) -> None:
        self._data: dict[Hashable, Any] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        self._data[key] = value

    def invalidate(self, key: Hashable | None = None) -> None:
        if key is None:
            self._data.clear()
        else:
            self._data.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data


class TTLCache:
    """Thread-safe cache whose entries expire.

    Args:
        default_ttl: Lifetime in seconds for entries set without a ttl.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            entry = self._data.get(key, _MISSING)
            if entry is _MISSING:
                return default
            expires, value = entry
            if expires <= self._clock():
                del self._data[key]
                return default
            return value

    def set(self, key: Hashable, value: Any, ttl: float | None = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._data[key] = (self._clock() + lifetime, value)

    def invalidate(self, key: Hashable | None = None) -> None:
        with self._lock:
            if key is None:
                self._data.clear()
            else:
                self._data.pop(key, None)
