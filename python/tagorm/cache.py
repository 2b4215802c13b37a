"""In-process query result cache."""

from __future__ import annotations

import threading
import time
from typing import Any


class MemoryCache:
    """Thread-safe key/value store with per-entry expiry.

    Any object with the same ``get``/``set``/``delete``/``clear`` methods can
    be handed to the ORM instead.

    Example:
        >>> cache = MemoryCache()
        >>> cache.set("users:active", rows, ttl=30)
        >>> cache.get("users:active") is rows
        True
    """

    def __init__(self, default_ttl: float = 60.0) -> None:
        self.default_ttl = default_ttl
        self._entries: dict[str, tuple[float | None, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            self._evict(time.monotonic())
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires is not None and expires <= time.monotonic():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value``; a ttl of 0 or less keeps it until cleared."""
        ttl = self.default_ttl if ttl is None else ttl
        expires = time.monotonic() + ttl if ttl > 0 else None
        with self._lock:
            self._entries[key] = (expires, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, (expires, _) in self._entries.items() if expires is not None and expires <= now]
        for key in expired:
            del self._entries[key]
