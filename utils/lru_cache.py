"""Size-bounded least-recently-used store. No expiry, recency only."""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING: Any = object()


class LRUCache(Generic[K, V]):
    def __init__(self, capacity: int = 1000) -> None:
        if int(capacity) < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = int(capacity)
        self._data: OrderedDict[K, V] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: K, default: Any = None) -> V | Any:
        """Return the value for ``key`` and mark it most-recently-used."""
        value = self._data.get(key, _MISSING)
        if value is _MISSING:
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def peek(self, key: K, default: Any = None) -> V | Any:
        return self._data.get(key, default)

    def set(self, key: K, value: V) -> K | None:
        """Insert or update ``key``. Returns the evicted key, if any."""
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = value
        if len(self._data) > self.capacity:
            evicted, _ = self._data.popitem(last=False)
            self.evictions += 1
            return evicted
        return None

    def delete(self, key: K) -> bool:
        if key in self._data:
            del self._data[key]
            return True
        return False

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[K]:
        return list(self._data.keys())

    def values(self) -> list[V]:
        return list(self._data.values())

    def trim(self, percent_to_keep: float = 75.0) -> int:
        """Drop the oldest entries so only ``percent_to_keep`` percent remain."""
        size = len(self._data)
        if percent_to_keep >= 100 or size == 0:
            return 0
        keep = max(1, int(size * float(percent_to_keep) / 100.0))
        removed = 0
        while len(self._data) > keep:
            self._data.popitem(last=False)
            self.evictions += 1
            removed += 1
        return removed

    def most_recent(self) -> tuple[K, V] | None:
        if not self._data:
            return None
        key = next(reversed(self._data))
        return key, self._data[key]

    def least_recent(self) -> tuple[K, V] | None:
        if not self._data:
            return None
        key = next(iter(self._data))
        return key, self._data[key]

    def stats(self) -> dict[str, int | float]:
        total = self.hits + self.misses
        return {
            "size": len(self._data),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate_percent": round((self.hits / total * 100.0) if total > 0 else 0.0, 2),
        }
