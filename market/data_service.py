"""Market data facade: cache first, dispatcher on miss, provider underneath."""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable

import config
from market.cache_store import MarketDataCache
from market.dispatcher import Priority, RequestDispatcher
from trading.collaborators import PriceProvider, TokenDiscovery
from utils.errors import PermanentRequestError

logger = logging.getLogger(__name__)

TREND_BULLISH = "BULLISH"
TREND_BEARISH = "BEARISH"
TREND_NEUTRAL = "NEUTRAL"
TREND_MAJORITY_SHARE = 0.7

_INTERVAL_UNITS = {"m": 60, "h": 3600, "d": 86400}


def interval_seconds(interval: str) -> int:
    raw = str(interval or "").strip().lower()
    if len(raw) < 2 or raw[-1] not in _INTERVAL_UNITS:
        raise PermanentRequestError(f"unsupported interval: {interval!r}")
    try:
        count = int(raw[:-1])
    except ValueError as exc:
        raise PermanentRequestError(f"unsupported interval: {interval!r}") from exc
    if count < 1:
        raise PermanentRequestError(f"unsupported interval: {interval!r}")
    return count * _INTERVAL_UNITS[raw[-1]]


def _require_token(token_id: str) -> str:
    token = str(token_id or "").strip()
    if not token:
        raise PermanentRequestError("token id is required")
    return token


def _as_float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


class MarketDataService:
    """Every read goes through one ``CategoryCache`` and, on a miss, the dispatcher.

    Priorities: single prices are HIGH, batch prices, token data and discovery
    are MEDIUM, historical series and top-token listings are LOW.
    """

    def __init__(
        self,
        provider: PriceProvider,
        dispatcher: RequestDispatcher,
        cache: MarketDataCache,
        discovery: TokenDiscovery | None = None,
        history_lookback_days: int = 7,
        history_interval: str = "1h",
        trends_top_n: int = 20,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.dispatcher = dispatcher
        self.cache = cache
        self.discovery = discovery
        self.history_lookback_days = max(1, int(history_lookback_days))
        self.history_interval = history_interval
        self.trends_top_n = max(1, int(trends_top_n))
        self._wall_clock = wall_clock
        self.total_requests = 0
        self.batch_requests = 0
        self.fallback_requests = 0
        self.errors = 0
        self.last_fetch_at: float | None = None

    @classmethod
    def from_config(
        cls,
        provider: PriceProvider,
        dispatcher: RequestDispatcher,
        cache: MarketDataCache,
        discovery: TokenDiscovery | None = None,
    ) -> "MarketDataService":
        return cls(
            provider=provider,
            dispatcher=dispatcher,
            cache=cache,
            discovery=discovery,
            history_lookback_days=config.HISTORY_LOOKBACK_DAYS,
            history_interval=config.HISTORY_INTERVAL,
            trends_top_n=config.MARKET_TRENDS_TOP_N,
        )

    def _dispatch(self, priority: Priority, fn: Callable[..., Any], *args: Any, provider_name: str | None = None):
        self.last_fetch_at = self._wall_clock()
        return self.dispatcher.submit(
            provider_name or self.provider.name,
            functools.partial(fn, *args),
            priority=priority,
        )

    async def _tracked(self, awaitable):
        self.total_requests += 1
        try:
            return await awaitable
        except asyncio.CancelledError:
            raise
        except Exception:
            self.errors += 1
            raise

    async def get_token_price(self, token_id: str) -> float:
        token = _require_token(token_id)
        return await self._tracked(
            self.cache.prices.get_or_fetch(
                token,
                lambda: self._dispatch(Priority.HIGH, self.provider.get_price, token),
            )
        )

    async def _fetch_price_batch(self, token_ids: list[str]) -> dict[str, Any]:
        return await self._dispatch(Priority.MEDIUM, self.provider.get_batch_prices, list(token_ids))

    async def get_batch_prices(self, token_ids: Iterable[str]) -> dict[str, float]:
        """Prices for many tokens with one batched call; misses fall back to single lookups.

        Tokens that fail both ways are left out of the result and logged.
        """
        tokens = [t for t in dict.fromkeys(str(x or "").strip() for x in token_ids) if t]
        if not tokens:
            return {}
        self.batch_requests += 1
        result = await self._tracked(self.cache.prices.get_or_fetch_many(tokens, self._fetch_price_batch))
        prices: dict[str, float] = dict(result.values)
        if not result.unresolved:
            return prices

        self.fallback_requests += len(result.unresolved)
        logger.debug("PRICE_BATCH_FALLBACK unresolved=%s", len(result.unresolved))
        outcomes = await asyncio.gather(
            *(self.get_token_price(token) for token in result.unresolved),
            return_exceptions=True,
        )
        for token, outcome in zip(result.unresolved, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("PRICE_FALLBACK_FAIL token=%s err=%s", token, outcome)
                continue
            prices[token] = outcome
        return {token: prices[token] for token in tokens if token in prices}

    def _history_key(self, token: str, start: datetime, end: datetime, interval: str) -> tuple:
        return (token, int(start.timestamp()), int(end.timestamp()), str(interval))

    async def get_historical_prices(
        self,
        token_id: str,
        start: datetime,
        end: datetime,
        interval: str = "1h",
    ) -> list[dict[str, float]]:
        token = _require_token(token_id)
        interval_seconds(interval)
        if end <= start:
            raise PermanentRequestError(f"empty history window for {token}: start={start} end={end}")
        key = self._history_key(token, start, end, interval)
        return await self._tracked(
            self.cache.historical_data.get_or_fetch(
                key,
                lambda: self._dispatch(
                    Priority.LOW,
                    self.provider.get_historical,
                    token,
                    start,
                    end,
                    interval,
                    provider_name=getattr(self.provider, "history_provider_name", None),
                ),
            )
        )

    async def get_historical_volumes(
        self,
        token_id: str,
        start: datetime,
        end: datetime,
        interval: str = "1h",
    ) -> list[dict[str, float]]:
        token = _require_token(token_id)
        key = self._history_key(token, start, end, interval)

        async def derive() -> list[dict[str, float]]:
            series = await self.get_historical_prices(token, start, end, interval)
            return [
                {"timestamp": _as_float(point.get("timestamp")), "volume": _as_float(point.get("volume"))}
                for point in series
            ]

        return await self._tracked(self.cache.volumes.get_or_fetch(key, derive))

    async def get_token_data(self, token_id: str) -> dict[str, Any]:
        token = _require_token(token_id)
        return await self._tracked(
            self.cache.token_data.get_or_fetch(
                token,
                lambda: self._dispatch(Priority.MEDIUM, self.provider.get_token_data, token),
            )
        )

    async def get_qualified_tokens(self, min_liquidity: float, min_volume_24h: float, limit: int) -> list[dict[str, Any]]:
        """Discovery results filtered by liquidity and 24h volume, at most ``limit`` tokens.

        Without a discovery collaborator the provider's top-token listing is used.
        """
        limit = max(1, int(limit))
        key = ("qualified", float(min_liquidity), float(min_volume_24h), limit)

        async def fetch() -> list[dict[str, Any]]:
            if self.discovery is not None:
                rows = await self._dispatch(
                    Priority.MEDIUM,
                    self.discovery.discover,
                    float(min_liquidity),
                    float(min_volume_24h),
                    limit,
                    provider_name=self.discovery.name,
                )
            else:
                rows = await self._dispatch(Priority.LOW, self.provider.get_top_tokens, limit)
            qualified = [
                row
                for row in (rows or [])
                if isinstance(row, dict)
                and row.get("address")
                and _as_float(row.get("liquidity")) >= float(min_liquidity)
                and _as_float(row.get("volume_24h")) >= float(min_volume_24h)
            ]
            return qualified[:limit]

        return await self._tracked(self.cache.token_data.get_or_fetch(key, fetch))

    def history_window(self) -> tuple[datetime, datetime]:
        """Lookback window with ``end`` floored to the interval so repeated calls share a key."""
        step = interval_seconds(self.history_interval)
        now = float(self._wall_clock())
        end_ts = int(now // step) * step
        end = datetime.fromtimestamp(end_ts, tz=timezone.utc)
        return end - timedelta(days=self.history_lookback_days), end

    async def prepare_token_analysis_data(self, token_id: str) -> dict[str, Any]:
        token = _require_token(token_id)
        start, end = self.history_window()
        token_data, history = await asyncio.gather(
            self.get_token_data(token),
            self.get_historical_prices(token, start, end, self.history_interval),
        )
        return {
            "token": token,
            "current_price": _as_float(token_data.get("price_usd")),
            "current_volume": _as_float(token_data.get("volume_24h")),
            "liquidity": _as_float(token_data.get("liquidity")),
            "market_cap": _as_float(token_data.get("market_cap")),
            "price_change_24h": _as_float(token_data.get("price_change_24h")),
            "prices": [_as_float(point.get("price")) for point in history],
            "volumes": [_as_float(point.get("volume")) for point in history],
            "timestamp": self._wall_clock(),
        }

    async def get_market_trends(self) -> dict[str, Any]:
        async def fetch() -> dict[str, Any]:
            top = await self._dispatch(Priority.LOW, self.provider.get_top_tokens, self.trends_top_n)
            tokens = [row for row in (top or []) if isinstance(row, dict)]
            total_volume = sum(_as_float(row.get("volume_24h")) for row in tokens)
            positive = sum(1 for row in tokens if _as_float(row.get("price_change_24h")) > 0)
            negative = sum(1 for row in tokens if _as_float(row.get("price_change_24h")) < 0)
            trend = TREND_NEUTRAL
            if tokens and positive > len(tokens) * TREND_MAJORITY_SHARE:
                trend = TREND_BULLISH
            elif tokens and negative > len(tokens) * TREND_MAJORITY_SHARE:
                trend = TREND_BEARISH
            by_change = sorted(tokens, key=lambda row: _as_float(row.get("price_change_24h")))
            return {
                "trend": trend,
                "top_movers": list(reversed(by_change))[:5],
                "top_losers": by_change[:5],
                "total_volume": total_volume,
                "timestamp": self._wall_clock(),
            }

        return await self._tracked(self.cache.trends.get_or_fetch("market_trends", fetch))

    async def preload(self, token_ids: Iterable[str]) -> dict[str, float]:
        """Warm prices (awaited) and token data (best effort) for ``token_ids``."""
        tokens = [t for t in dict.fromkeys(str(x or "").strip() for x in token_ids) if t]
        if not tokens:
            return {}
        prices = await self.get_batch_prices(tokens)
        outcomes = await asyncio.gather(*(self.get_token_data(t) for t in tokens), return_exceptions=True)
        failed = sum(1 for outcome in outcomes if isinstance(outcome, Exception))
        if failed:
            logger.info("PRELOAD_PARTIAL tokens=%s token_data_failed=%s", len(tokens), failed)
        return prices

    def invalidate_all(self) -> int:
        return self.cache.invalidate_all()

    def stats(self) -> dict[str, Any]:
        categories = self.cache.stats()
        hits = sum(int(row["hits"]) for row in categories.values())
        misses = sum(int(row["misses"]) for row in categories.values())
        lookups = hits + misses
        return {
            "total_requests": self.total_requests,
            "batch_requests": self.batch_requests,
            "fallback_requests": self.fallback_requests,
            "errors": self.errors,
            "cache_hits": hits,
            "cache_misses": misses,
            "cache_hit_rate_percent": round((hits / lookups * 100.0) if lookups > 0 else 0.0, 2),
            "last_fetch_at": self.last_fetch_at,
            "categories": categories,
        }
