"""Keyed in-memory TTL cache.

Each entry carries its own expiry so positive and negative results can
be cached for different durations. Reads and writes are plain dict
operations and safe to interleave from concurrent asyncio tasks.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class KeyedTTLCache(Generic[T]):
    """Per-key TTL cache that can hold ``None`` as a cached (negative) value."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry[Optional[T]]] = {}

    def lookup(self, key: Hashable) -> tuple[bool, Optional[T]]:
        """Return ``(hit, value)``; expired entries are evicted and reported as misses."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        if self._clock() >= entry.expires_at:
            self._entries.pop(key, None)
            return False, None
        return True, entry.value

    def set(self, key: Hashable, value: Optional[T], ttl_seconds: float) -> Optional[T]:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl_seconds)
        return value

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
