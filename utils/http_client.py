"""Shared aiohttp transport. One attempt per call; failures raise classified errors.

Pacing, retries and 429 backoff belong to ``market.dispatcher``. This client
only turns an HTTP exchange into either a decoded payload or a
``ProviderError`` subclass the dispatcher knows how to handle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

import config
from utils.errors import PermanentRequestError, RateLimitedError, TransientProviderError

logger = logging.getLogger(__name__)


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0


def parse_retry_after(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value > 0 else None


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector_limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30))
            connector = aiohttp.TCPConnector(limit=connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    @staticmethod
    def _source_key(source: str) -> str:
        return str(source or "default").strip().lower() or "default"

    def _get_semaphore(self, source_key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(source_key)
        if sem is not None:
            return sem
        default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
        limit = max(1, int(self._source_limits.get(source_key, default_limit)))
        sem = asyncio.Semaphore(limit)
        self._semaphores[source_key] = sem
        return sem

    def _stats_row(self, source_key: str) -> HttpSourceStats:
        row = self._stats.get(source_key)
        if row is None:
            row = HttpSourceStats()
            self._stats[source_key] = row
        return row

    @staticmethod
    def _record_latency(stats: HttpSourceStats, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        stats.latency_total_ms += elapsed_ms
        stats.latency_count += 1
        stats.latency_max_ms = max(stats.latency_max_ms, elapsed_ms)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for source, row in self._stats.items():
            total = int(row.ok + row.fail)
            err_pct = (float(row.fail) / total * 100.0) if total > 0 else 0.0
            out[source] = {
                "ok": int(row.ok),
                "fail": int(row.fail),
                "total": total,
                "rate_limited": int(row.rate_limited),
                "error_percent": round(err_pct, 2),
                "latency_avg_ms": round((row.latency_total_ms / row.latency_count), 2) if row.latency_count > 0 else 0.0,
                "latency_max_ms": round(float(row.latency_max_ms), 2),
            }
        if reset:
            self._stats = {}
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        req_headers = dict(self._headers)
        if headers:
            req_headers.update(headers)

        source_key = self._source_key(source)
        stats = self._stats_row(source_key)
        async with self._get_semaphore(source_key):
            started = time.perf_counter()
            try:
                session = await self._get_session()
                async with session.get(url, params=params, headers=req_headers) as response:
                    self._record_latency(stats, started)
                    status = int(response.status or 0)
                    if status == 200:
                        payload = await response.json(content_type=None)
                        stats.ok += 1
                        return payload
                    stats.fail += 1
                    if status == 429:
                        stats.rate_limited += 1
                        retry_after = parse_retry_after((response.headers or {}).get("Retry-After"))
                        logger.warning("RATE_LIMIT source=%s status=429 retry_after=%s url=%s", source_key, retry_after, url)
                        raise RateLimitedError(
                            f"http_status_429 url={url}",
                            provider=source_key,
                            retry_after=retry_after,
                        )
                    if 500 <= status <= 599:
                        raise TransientProviderError(f"http_status_{status} url={url}", provider=source_key, status=status)
                    raise PermanentRequestError(f"http_status_{status} url={url}", provider=source_key, status=status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self._record_latency(stats, started)
                stats.fail += 1
                raise TransientProviderError(f"http_error:{exc}", provider=source_key) from exc
            except ValueError as exc:
                stats.fail += 1
                raise PermanentRequestError(f"invalid_json:{exc}", provider=source_key) from exc
