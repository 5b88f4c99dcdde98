"""Priority-ordered, per-provider rate-limited, retrying request dispatcher."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

import config
from utils.errors import (
    DispatcherClosedError,
    RateLimitedError,
    classify_error,
    is_transient,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]


class Priority(enum.IntEnum):
    HIGH = 0
    MEDIUM = 1
    LOW = 2


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling, exponential backoff and the retryable-error predicate."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.0
    retryable: Callable[[BaseException], bool] = is_transient

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.RETRY_MAX_ATTEMPTS)),
            base_delay=max(0.0, float(config.RETRY_BACKOFF_BASE_SECONDS)),
            max_delay=max(0.0, float(config.RETRY_BACKOFF_MAX_SECONDS)),
            jitter=max(0.0, float(config.RETRY_JITTER_SECONDS)),
        )

    def backoff(self, attempt: int) -> float:
        exp = min(self.max_delay, self.base_delay * (2 ** max(0, int(attempt) - 1)))
        if self.jitter > 0:
            exp += random.uniform(0.0, self.jitter)
        return max(0.0, exp)

    def is_retryable(self, exc: BaseException) -> bool:
        return bool(self.retryable(exc))


@dataclass
class QueuedRequest:
    provider: str
    priority: Priority
    payload: FetchFn
    future: asyncio.Future
    enqueued_at: float
    timeout: float | None = None
    attempts: int = 0


class RateLimitWindow:
    """Sliding record of dispatch times for one provider."""

    def __init__(self, provider: str, limit: int, period: float) -> None:
        self.provider = provider
        self.limit = max(1, int(limit))
        self.period = max(0.001, float(period))
        self.timestamps: deque[float] = deque()
        self.blocked_until = 0.0

    def _prune(self, now: float) -> None:
        cutoff = now - self.period
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        """Seconds until a dispatch is allowed, 0.0 when a slot is free."""
        self._prune(now)
        blocked = max(0.0, self.blocked_until - now)
        if blocked > 0:
            return blocked
        if len(self.timestamps) < self.limit:
            return 0.0
        return max(0.0, (self.timestamps[0] + self.period) - now)

    def record(self, now: float) -> None:
        self.timestamps.append(now)

    def saturate_for(self, seconds: float, now: float) -> None:
        self.blocked_until = max(self.blocked_until, now + max(0.0, float(seconds)))

    def in_use(self, now: float) -> int:
        self._prune(now)
        return len(self.timestamps)


@dataclass
class ProviderStats:
    dispatched: int = 0
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0


@dataclass
class _ProviderLanes:
    lanes: dict[Priority, deque[QueuedRequest]] = field(
        default_factory=lambda: {priority: deque() for priority in Priority}
    )

    def head_lane(self) -> deque[QueuedRequest] | None:
        for priority in Priority:
            lane = self.lanes[priority]
            while lane and lane[0].future.done():
                lane.popleft()
            if lane:
                return lane
        return None

    def drain(self) -> list[QueuedRequest]:
        out: list[QueuedRequest] = []
        for lane in self.lanes.values():
            out.extend(lane)
            lane.clear()
        return out


class RequestDispatcher:
    """Single dispatch loop over per-provider priority lanes.

    For each provider the loop always takes the head of its highest non-empty
    lane. Requests within a lane leave in enqueue order. A provider whose
    window is saturated is skipped until its oldest timestamp leaves the
    period; other providers keep flowing meanwhile.
    """

    def __init__(
        self,
        rate_limits: Mapping[str, tuple[int, float]] | None = None,
        retry_policy: RetryPolicy | None = None,
        request_timeout: float | None = 10.0,
        rate_limit_backoff: float = 60.0,
        rate_limit_backoffs: Mapping[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate_limits = {self._key(k): v for k, v in dict(rate_limits or {}).items()}
        self._retry = retry_policy or RetryPolicy()
        self._timeout = request_timeout
        self._rate_limit_backoff = max(0.0, float(rate_limit_backoff))
        self._rate_limit_backoffs = {self._key(k): float(v) for k, v in dict(rate_limit_backoffs or {}).items()}
        self._clock = clock
        self._providers: dict[str, _ProviderLanes] = {}
        self._windows: dict[str, RateLimitWindow] = {}
        self._stats: dict[str, ProviderStats] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._retrying: dict[asyncio.Task, QueuedRequest] = {}
        self._closed = False

    @classmethod
    def from_config(cls) -> "RequestDispatcher":
        return cls(
            rate_limits=config.PROVIDER_RATE_LIMITS,
            retry_policy=RetryPolicy.from_config(),
            request_timeout=float(config.REQUEST_TIMEOUT_SECONDS),
            rate_limit_backoff=float(config.RATE_LIMIT_BACKOFF_SECONDS),
            rate_limit_backoffs=config.PROVIDER_429_BACKOFFS,
        )

    @staticmethod
    def _key(provider: str) -> str:
        return str(provider or "default").strip().lower() or "default"

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def closed(self) -> bool:
        return self._closed

    def _lanes_for(self, provider: str) -> _ProviderLanes:
        lanes = self._providers.get(provider)
        if lanes is None:
            lanes = _ProviderLanes()
            self._providers[provider] = lanes
        return lanes

    def _window_for(self, provider: str, create: bool = False) -> RateLimitWindow | None:
        window = self._windows.get(provider)
        if window is not None:
            return window
        limit = self._rate_limits.get(provider)
        if limit is not None:
            window = RateLimitWindow(provider, limit[0], limit[1])
        elif create:
            # Unlimited provider that got a 429: track it so the block applies.
            window = RateLimitWindow(provider, 1_000_000, 1.0)
        else:
            return None
        self._windows[provider] = window
        return window

    def _stats_row(self, provider: str) -> ProviderStats:
        row = self._stats.get(provider)
        if row is None:
            row = ProviderStats()
            self._stats[provider] = row
        return row

    def start(self) -> None:
        if self._closed:
            raise DispatcherClosedError("dispatcher is closed")
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run(), name="request_dispatcher")

    def enqueue(
        self,
        provider: str,
        fetch_fn: FetchFn,
        priority: Priority = Priority.MEDIUM,
        timeout: float | None = None,
    ) -> asyncio.Future:
        """Queue ``fetch_fn`` for ``provider`` and return the future of its outcome."""
        if self._closed:
            raise DispatcherClosedError("dispatcher is closed")
        self.start()
        key = self._key(provider)
        request = QueuedRequest(
            provider=key,
            priority=Priority(priority),
            payload=fetch_fn,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=self._clock(),
            timeout=timeout,
        )
        self._lanes_for(key).lanes[request.priority].append(request)
        self._wakeup.set()
        return request.future

    async def submit(
        self,
        provider: str,
        fetch_fn: FetchFn,
        priority: Priority = Priority.MEDIUM,
        timeout: float | None = None,
    ) -> Any:
        return await self.enqueue(provider, fetch_fn, priority=priority, timeout=timeout)

    async def _run(self) -> None:
        while not self._closed:
            self._wakeup.clear()
            wait_for = self._dispatch_ready()
            if wait_for is None:
                await self._wakeup.wait()
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=max(0.001, wait_for))
            except asyncio.TimeoutError:
                pass

    def _dispatch_ready(self) -> float | None:
        """Dispatch everything currently allowed; return the shortest deferral."""
        next_wait: float | None = None
        progressed = True
        while progressed:
            progressed = False
            now = self._clock()
            for provider, lanes in self._providers.items():
                lane = lanes.head_lane()
                if lane is None:
                    continue
                window = self._window_for(provider)
                if window is not None:
                    wait = window.wait_time(now)
                    if wait > 0:
                        self._stats_row(provider).limiter_waits += 1
                        logger.debug(
                            "DISPATCH_RATE_WAIT provider=%s wait=%.3fs in_window=%s limit=%s",
                            provider,
                            wait,
                            len(window.timestamps),
                            window.limit,
                        )
                        next_wait = wait if next_wait is None else min(next_wait, wait)
                        continue
                    window.record(now)
                request = lane.popleft()
                self._launch(request)
                progressed = True
        return next_wait

    def _launch(self, request: QueuedRequest) -> None:
        task = asyncio.create_task(self._execute(request))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _execute(self, request: QueuedRequest) -> None:
        stats = self._stats_row(request.provider)
        request.attempts += 1
        stats.dispatched += 1
        timeout = request.timeout if request.timeout is not None else self._timeout
        started = time.perf_counter()
        try:
            if timeout:
                value = await asyncio.wait_for(request.payload(), timeout=timeout)
            else:
                value = await request.payload()
        except asyncio.CancelledError:
            if not request.future.done():
                if self._closed:
                    request.future.set_exception(DispatcherClosedError("dispatcher closed while request was running"))
                else:
                    request.future.cancel()
            raise
        except Exception as exc:
            self._record_latency(stats, started)
            error = classify_error(exc)
            if error is not exc:
                error.__cause__ = exc
            if not error.provider:
                error.provider = request.provider
            self._handle_failure(request, error)
        else:
            self._record_latency(stats, started)
            stats.ok += 1
            if not request.future.done():
                request.future.set_result(value)

    @staticmethod
    def _record_latency(stats: ProviderStats, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        stats.latency_total_ms += elapsed_ms
        stats.latency_count += 1
        stats.latency_max_ms = max(stats.latency_max_ms, elapsed_ms)

    def _handle_failure(self, request: QueuedRequest, error: Exception) -> None:
        stats = self._stats_row(request.provider)
        if isinstance(error, RateLimitedError):
            stats.rate_limited += 1
            backoff = self._rate_limited_backoff(request.provider, error)
            window = self._window_for(request.provider, create=True)
            window.saturate_for(backoff, self._clock())
            logger.warning(
                "RATE_LIMIT provider=%s status=%s backoff=%.2fs",
                request.provider,
                error.status,
                backoff,
            )

        if (
            not self._closed
            and not request.future.done()
            and request.attempts < self._retry.max_attempts
            and self._retry.is_retryable(error)
        ):
            stats.retries += 1
            delay = self._retry.backoff(request.attempts)
            logger.debug(
                "DISPATCH_RETRY provider=%s attempt=%s/%s delay=%.2fs err=%s",
                request.provider,
                request.attempts,
                self._retry.max_attempts,
                delay,
                error,
            )
            task = asyncio.create_task(self._requeue_after(request, delay))
            self._retrying[task] = request
            task.add_done_callback(lambda t: self._retrying.pop(t, None))
            return

        stats.fail += 1
        logger.debug(
            "DISPATCH_FAIL provider=%s attempts=%s err=%s",
            request.provider,
            request.attempts,
            error,
        )
        if not request.future.done():
            request.future.set_exception(error)

    def _rate_limited_backoff(self, provider: str, error: RateLimitedError) -> float:
        default = float(self._rate_limit_backoffs.get(provider, self._rate_limit_backoff))
        return max(float(error.retry_after or 0.0), default)

    async def _requeue_after(self, request: QueuedRequest, delay: float) -> None:
        await asyncio.sleep(delay)
        if request.future.done():
            return
        if self._closed:
            request.future.set_exception(DispatcherClosedError("dispatcher closed during retry backoff"))
            return
        # A retry keeps its place ahead of requests enqueued after it.
        self._lanes_for(request.provider).lanes[request.priority].appendleft(request)
        self._wakeup.set()

    def queue_depth(self, provider: str | None = None) -> int:
        providers = [self._key(provider)] if provider is not None else list(self._providers.keys())
        total = 0
        for key in providers:
            lanes = self._providers.get(key)
            if lanes is None:
                continue
            total += sum(len(lane) for lane in lanes.lanes.values())
        return total

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._loop_task
        self._loop_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        dropped = 0
        for lanes in self._providers.values():
            for request in lanes.drain():
                if not request.future.done():
                    request.future.set_exception(DispatcherClosedError("dispatcher closed"))
                    dropped += 1
        for retry_task, request in list(self._retrying.items()):
            retry_task.cancel()
            if not request.future.done():
                request.future.set_exception(DispatcherClosedError("dispatcher closed"))
                dropped += 1
        pending = list(self._inflight) + list(self._retrying.keys())
        for inflight in self._inflight:
            inflight.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("DISPATCHER_CLOSED dropped=%s", dropped)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        now = self._clock()
        for provider in set(self._stats.keys()) | set(self._providers.keys()):
            row = self._stats_row(provider)
            total = int(row.ok + row.fail)
            err_pct = (float(row.fail) / total * 100.0) if total > 0 else 0.0
            lanes = self._providers.get(provider)
            window = self._windows.get(provider)
            out[provider] = {
                "dispatched": int(row.dispatched),
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "limiter_waits": int(row.limiter_waits),
                "retries": int(row.retries),
                "error_percent": round(err_pct, 2),
                "latency_avg_ms": round((row.latency_total_ms / row.latency_count), 2) if row.latency_count > 0 else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
                "queued": {
                    priority.name.lower(): (len(lanes.lanes[priority]) if lanes is not None else 0)
                    for priority in Priority
                },
                "window_used": window.in_use(now) if window is not None else 0,
                "window_limit": window.limit if window is not None else 0,
                "blocked_remaining_sec": round(max(0.0, window.blocked_until - now), 2) if window is not None else 0.0,
            }
        if reset:
            self._stats = {}
        return out
