"""Small time-bounded cache for calendar connection status lookups."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    value: Any
    fetched_at: float


class StatusCache:
    """Keyed {value, fetched_at} cache with an injectable monotonic clock."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def put(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())

    async def get_or_refresh(self, key: str, loader: Callable[[], Awaitable[Any]], max_age: float) -> Any:
        """Return the cached value, reloading it when older than max_age seconds."""
        entry = self._entries.get(key)
        if entry is not None and self._clock() - entry.fetched_at <= max_age:
            return entry.value
        value = await loader()
        self.put(key, value)
        return value

    def invalidate(self, key: str | None = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)
