"""Small TTL query cache for stale-while-revalidate reads."""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any


@dataclass
class _Entry:
    value: Any
    fetched_at: float
    stale_after: float
    invalidated: bool = False


class QueryCache:
    """Values keyed by query key, each with its own staleness window.

    A value stays readable after it goes stale or is invalidated; callers use
    ``is_fresh`` to decide whether to refetch in the background.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else default

    def has(self, key: Hashable) -> bool:
        return key in self._entries

    def is_fresh(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.invalidated:
            return False
        return self._clock() - entry.fetched_at < entry.stale_after

    def set(self, key: Hashable, value: Any, stale_after: float) -> None:
        self._entries[key] = _Entry(value=value, fetched_at=self._clock(), stale_after=stale_after)

    def update(self, key: Hashable, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Apply ``fn`` to the cached value in place, keeping its freshness."""
        entry = self._entries.get(key)
        if entry is None:
            return default
        entry.value = fn(entry.value)
        return entry.value

    def invalidate(self, key: Hashable) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.invalidated = True

    def invalidate_prefix(self, prefix: tuple) -> None:
        for key, entry in self._entries.items():
            if isinstance(key, tuple) and key[: len(prefix)] == prefix:
                entry.invalidated = True
