"""Per-category TTL caches with in-flight request coalescing.

Each category (prices, volumes, token data, historical series) is its own
``CategoryCache`` with its own TTL and capacity, backed by ``LRUCache``.

Concurrent requests for the same key while nothing fresh is cached share a
single upstream fetch:

- the first caller registers a pending future and starts the fetch as a task
- later callers for the same key await that future
- on success the value is stored and every waiter gets it
- on failure every waiter gets the same exception and nothing is stored

Pending registration happens without an await between the lookup and the
insert, so it is atomic on the event loop. The fetch runs in its own task and
waiters await it through ``asyncio.shield`` so one cancelled caller never
cancels the fetch for the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Hashable, Iterable, Mapping

import config
from utils.errors import UnresolvedKeyError
from utils.lru_cache import LRUCache

logger = logging.getLogger(__name__)

_MISS: Any = object()

FetchFn = Callable[[], Awaitable[Any]]
BatchFetchFn = Callable[[list], Awaitable[Mapping[Any, Any]]]


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float
    ttl: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)

    def is_fresh(self, now: float) -> bool:
        return (now - self.stored_at) <= self.ttl


@dataclass
class BatchResult:
    values: dict[Any, Any] = field(default_factory=dict)
    unresolved: list[Any] = field(default_factory=list)
    errors: dict[Any, BaseException] = field(default_factory=dict)


def _consume_exception(fut: asyncio.Future) -> None:
    # Waiters may all be gone; retrieve the exception so asyncio does not warn.
    if not fut.cancelled():
        fut.exception()


class CategoryCache:
    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        capacity: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = str(name)
        self.ttl = max(0.0, float(ttl_seconds))
        self._store: LRUCache[Hashable, CacheEntry] = LRUCache(capacity)
        self._clock = clock
        self._pending: dict[Hashable, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()
        self._generation = 0
        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.fetches = 0
        self.batch_fetches = 0
        self.fetch_errors = 0
        self.discarded_results = 0

    @property
    def capacity(self) -> int:
        return self._store.capacity

    def __len__(self) -> int:
        return len(self._store)

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, key: Hashable) -> bool:
        return key in self._pending

    def _lookup(self, key: Hashable) -> Any:
        entry = self._store.get(key, _MISS)
        if entry is _MISS:
            return _MISS
        if not entry.is_fresh(self._clock()):
            self._store.delete(key)
            return _MISS
        return entry.value

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return a fresh cached value, or ``default``. Expired entries are dropped."""
        value = self._lookup(key)
        if value is _MISS:
            self.misses += 1
            return default
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl if ttl_seconds is None else max(0.0, float(ttl_seconds))
        evicted = self._store.set(key, CacheEntry(value=value, stored_at=self._clock(), ttl=ttl))
        if evicted is not None:
            logger.debug("CACHE_EVICT category=%s key=%s", self.name, evicted)

    def delete(self, key: Hashable) -> bool:
        return self._store.delete(key)

    def invalidate(self) -> int:
        """Drop every entry. Fetches already in flight finish but are not stored."""
        count = len(self._store)
        self._store.clear()
        self._generation += 1
        return count

    async def get_or_fetch(self, key: Hashable, fetch_fn: FetchFn) -> Any:
        value = self._lookup(key)
        if value is not _MISS:
            self.hits += 1
            return value
        self.misses += 1

        fut = self._pending.get(key)
        if fut is not None:
            self.coalesced += 1
            logger.debug("CACHE_COALESCE category=%s key=%s", self.name, key)
        else:
            fut = self._register(key)
            self.fetches += 1
            self._spawn(self._run_fetch(key, fetch_fn, fut, self._generation))
        return await asyncio.shield(fut)

    async def get_or_fetch_many(self, keys: Iterable[Hashable], batch_fetch_fn: BatchFetchFn) -> BatchResult:
        """Resolve many keys with at most one batched upstream call.

        Cached keys are served directly, keys already being fetched are joined,
        and the rest go to ``batch_fetch_fn`` in one call. Only keys the batch
        resolved are cached; the others come back in ``unresolved``.
        """
        unique = list(dict.fromkeys(keys))
        values: dict[Any, Any] = {}
        waiting: dict[Any, asyncio.Future] = {}
        to_fetch: list[Any] = []

        for key in unique:
            value = self._lookup(key)
            if value is not _MISS:
                self.hits += 1
                values[key] = value
                continue
            self.misses += 1
            fut = self._pending.get(key)
            if fut is not None:
                self.coalesced += 1
                waiting[key] = fut
                continue
            to_fetch.append(key)

        if to_fetch:
            futures = {key: self._register(key) for key in to_fetch}
            waiting.update(futures)
            self.batch_fetches += 1
            self._spawn(self._run_batch_fetch(to_fetch, batch_fetch_fn, futures, self._generation))

        result = BatchResult()
        if waiting:
            outcomes = await asyncio.gather(
                *(asyncio.shield(fut) for fut in waiting.values()),
                return_exceptions=True,
            )
            for key, outcome in zip(waiting.keys(), outcomes):
                if isinstance(outcome, BaseException):
                    result.errors[key] = outcome
                else:
                    values[key] = outcome

        for key in unique:
            if key in values:
                result.values[key] = values[key]
            else:
                result.unresolved.append(key)
        return result

    def _register(self, key: Hashable) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_exception)
        self._pending[key] = fut
        return fut

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _release(self, key: Hashable, fut: asyncio.Future) -> None:
        if self._pending.get(key) is fut:
            del self._pending[key]

    def _store_if_current(self, key: Hashable, value: Any, generation: int) -> None:
        if generation != self._generation:
            self.discarded_results += 1
            return
        self.set(key, value)

    async def _run_fetch(self, key: Hashable, fetch_fn: FetchFn, fut: asyncio.Future, generation: int) -> None:
        try:
            value = await fetch_fn()
        except asyncio.CancelledError:
            if not fut.done():
                fut.cancel()
            raise
        except Exception as exc:
            self.fetch_errors += 1
            logger.debug("CACHE_FETCH_FAIL category=%s key=%s err=%s", self.name, key, exc)
            if not fut.done():
                fut.set_exception(exc)
        else:
            self._store_if_current(key, value, generation)
            if not fut.done():
                fut.set_result(value)
        finally:
            self._release(key, fut)

    async def _run_batch_fetch(
        self,
        keys: list[Any],
        batch_fetch_fn: BatchFetchFn,
        futures: dict[Any, asyncio.Future],
        generation: int,
    ) -> None:
        try:
            raw = await batch_fetch_fn(list(keys))
            mapping = dict(raw or {})
        except asyncio.CancelledError:
            for fut in futures.values():
                if not fut.done():
                    fut.cancel()
            raise
        except Exception as exc:
            self.fetch_errors += 1
            logger.debug("CACHE_BATCH_FAIL category=%s keys=%s err=%s", self.name, len(keys), exc)
            for fut in futures.values():
                if not fut.done():
                    fut.set_exception(exc)
        else:
            for key in keys:
                fut = futures[key]
                value = mapping.get(key)
                if isinstance(value, BaseException):
                    fut.set_exception(value)
                elif value is None:
                    fut.set_exception(UnresolvedKeyError(key))
                else:
                    self._store_if_current(key, value, generation)
                    fut.set_result(value)
        finally:
            for key, fut in futures.items():
                if not fut.done():
                    fut.set_exception(UnresolvedKeyError(key))
                self._release(key, fut)

    def stats(self) -> dict[str, int | float]:
        total = self.hits + self.misses
        return {
            "entries": len(self._store),
            "capacity": self._store.capacity,
            "ttl_seconds": self.ttl,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_percent": round((self.hits / total * 100.0) if total > 0 else 0.0, 2),
            "evictions": self._store.evictions,
            "coalesced": self.coalesced,
            "fetches": self.fetches,
            "batch_fetches": self.batch_fetches,
            "fetch_errors": self.fetch_errors,
            "discarded_results": self.discarded_results,
            "pending": len(self._pending),
        }


class MarketDataCache:
    """The market-data categories owned by one engine instance."""

    def __init__(
        self,
        prices: CategoryCache,
        volumes: CategoryCache,
        token_data: CategoryCache,
        historical_data: CategoryCache,
        trends: CategoryCache | None = None,
    ) -> None:
        self.prices = prices
        self.volumes = volumes
        self.token_data = token_data
        self.historical_data = historical_data
        self.trends = trends if trends is not None else CategoryCache("trends", 60.0, 4, prices._clock)

    @classmethod
    def from_config(cls, clock: Callable[[], float] = time.monotonic) -> "MarketDataCache":
        size = max(2, int(config.CACHE_MAX_SIZE))
        return cls(
            prices=CategoryCache("prices", config.PRICE_CACHE_TTL_SECONDS, size, clock),
            volumes=CategoryCache("volumes", config.VOLUME_CACHE_TTL_SECONDS, size, clock),
            token_data=CategoryCache("token_data", config.TOKEN_DATA_CACHE_TTL_SECONDS, size, clock),
            historical_data=CategoryCache(
                "historical_data",
                config.HISTORY_CACHE_TTL_SECONDS,
                max(1, int(config.HISTORY_CACHE_MAX_SIZE or size // 2)),
                clock,
            ),
            trends=CategoryCache("trends", config.MARKET_TRENDS_TTL_SECONDS, 4, clock),
        )

    def categories(self) -> dict[str, CategoryCache]:
        return {
            "prices": self.prices,
            "volumes": self.volumes,
            "token_data": self.token_data,
            "historical_data": self.historical_data,
            "trends": self.trends,
        }

    def invalidate_all(self) -> int:
        cleared = sum(cache.invalidate() for cache in self.categories().values())
        logger.info("CACHE_INVALIDATE_ALL entries=%s", cleared)
        return cleared

    def stats(self) -> dict[str, dict[str, int | float]]:
        return {name: cache.stats() for name, cache in self.categories().items()}
