"""Bounded in-memory cache with sliding TTL eviction."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Bounded map whose entries expire after `ttl` seconds without access.

    Owned by whoever constructs it and passed in explicitly; there is no
    module-level instance.

    Example:
        cache = TTLCache(max_entries=128, ttl=3600)
        cache.set("file-1", processed)
        cache.get("file-1")
    """

    def __init__(
        self,
        max_entries: int = 256,
        ttl: float = 3600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[V, float]] = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> V | Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, last_accessed = entry
        now = self._clock()
        if now - last_accessed > self.ttl:
            del self._entries[key]
            return default
        # Sliding expiry: access refreshes the entry
        self._entries[key] = (value, now)
        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (value, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def pop(self, key: Hashable, default: Any = None) -> V | Any:
        entry = self._entries.pop(key, None)
        return default if entry is None else entry[0]

    def evict_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, (_, ts) in self._entries.items() if now - ts > self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)


_MISSING = object()
