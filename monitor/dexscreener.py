"""DexScreener price/discovery source with GeckoTerminal OHLCV history."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any

from config import (
    CHAIN_ID,
    DEX_BATCH_MAX_ADDRESSES,
    DEX_SEARCH_QUERIES,
    DEXSCREENER_API,
    GECKO_NETWORK,
    GECKOTERMINAL_API,
    HTTP_USER_AGENT,
    REQUEST_TIMEOUT_SECONDS,
)
from market.data_service import interval_seconds
from utils.errors import PermanentRequestError, UnresolvedKeyError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

GECKO_OHLCV_MAX_LIMIT = 1000

# (timeframe, allowed aggregates) as accepted by the GeckoTerminal OHLCV endpoint.
_GECKO_TIMEFRAMES = (
    ("day", 86400, (1,)),
    ("hour", 3600, (1, 4, 12)),
    ("minute", 60, (1, 5, 15)),
)


def _match_key(address: str | None) -> str:
    return str(address or "").strip().lower()


def _float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


def gecko_timeframe(interval_seconds: int) -> tuple[str, int]:
    for timeframe, unit, aggregates in _GECKO_TIMEFRAMES:
        if interval_seconds % unit == 0 and (interval_seconds // unit) in aggregates:
            return timeframe, interval_seconds // unit
    raise PermanentRequestError(f"interval not supported by geckoterminal: {interval_seconds}s")


class DexScreenerProvider:
    """Price provider and token discovery for one chain.

    Prices, token data and discovery come from DexScreener. Historical series
    come from GeckoTerminal and are dispatched under ``history_provider_name``
    so they are paced against that API's own limit.
    """

    name = "dexscreener"
    history_provider_name = "geckoterminal"

    def __init__(self, http: ResilientHttpClient | None = None, chain_id: str = CHAIN_ID) -> None:
        self.chain_id = str(chain_id or "").strip().lower()
        self._headers = {
            "User-Agent": HTTP_USER_AGENT,
            "Accept": "application/json, text/plain, */*",
        }
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(REQUEST_TIMEOUT_SECONDS),
            headers=self._headers,
            source_limits={
                "dexscreener": 8,
                "geckoterminal": 5,
            },
        )
        self._pool_by_token: dict[str, str] = {}

    async def close(self) -> None:
        await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def _fetch_dex(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json(
            f"{DEXSCREENER_API}/{path.lstrip('/')}",
            source="dexscreener",
            params=params,
        )

    async def _fetch_gecko(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json(
            f"{GECKOTERMINAL_API}/{path.lstrip('/')}",
            source="geckoterminal",
            params=params,
        )

    def _chain_pairs(self, data: Any) -> list[dict[str, Any]]:
        if not isinstance(data, dict):
            raise PermanentRequestError("dexscreener payload is not an object")
        pairs = data.get("pairs") or []
        return [
            pair
            for pair in pairs
            if isinstance(pair, dict) and str(pair.get("chainId", "")).lower() == self.chain_id
        ]

    @staticmethod
    def _best_pairs(pairs: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
        """Deepest-liquidity pair per base token, keyed by case-folded address."""
        best: dict[str, dict[str, Any]] = {}
        for pair in pairs:
            key = _match_key((pair.get("baseToken") or {}).get("address"))
            if not key:
                continue
            existing = best.get(key)
            liq = _float((pair.get("liquidity") or {}).get("usd"))
            if existing is None or liq > _float((existing.get("liquidity") or {}).get("usd")):
                best[key] = pair
        return best

    def _format_token_data(self, pair: dict[str, Any]) -> dict[str, Any]:
        base = pair.get("baseToken") or {}
        created_ms = pair.get("pairCreatedAt")
        created_at = (
            datetime.fromtimestamp(float(created_ms) / 1000, tz=timezone.utc) if created_ms else None
        )
        return {
            "name": base.get("name", "Unknown"),
            "symbol": base.get("symbol", "N/A"),
            "address": str(base.get("address") or ""),
            "pair_address": str(pair.get("pairAddress") or ""),
            "dex": str(pair.get("dexId") or "").lower(),
            "price_usd": _float(pair.get("priceUsd")),
            "liquidity": _float((pair.get("liquidity") or {}).get("usd")),
            "volume_24h": _float((pair.get("volume") or {}).get("h24")),
            "volume_5m": _float((pair.get("volume") or {}).get("m5")),
            "price_change_24h": _float((pair.get("priceChange") or {}).get("h24")),
            "price_change_5m": _float((pair.get("priceChange") or {}).get("m5")),
            "market_cap": _float(pair.get("marketCap") or pair.get("fdv")),
            "created_at": created_at,
            "url": str(pair.get("url") or ""),
            "source": self.name,
        }

    async def _best_pair(self, token_id: str) -> dict[str, Any]:
        data = await self._fetch_dex(f"tokens/{token_id}")
        pair = self._best_pairs(self._chain_pairs(data)).get(_match_key(token_id))
        if pair is None:
            raise UnresolvedKeyError(token_id, f"no {self.chain_id} pair for token {token_id}")
        return pair

    async def get_price(self, token_id: str) -> float:
        pair = await self._best_pair(token_id)
        price = _float(pair.get("priceUsd"))
        if price <= 0:
            raise UnresolvedKeyError(token_id, f"no usd price for token {token_id}")
        return price

    async def get_batch_prices(self, token_ids: list[str]) -> dict[str, float]:
        """One request per chunk of addresses. Tokens without a priced pair are left out."""
        out: dict[str, float] = {}
        ids = [t for t in dict.fromkeys(token_ids) if t]
        for offset in range(0, len(ids), DEX_BATCH_MAX_ADDRESSES):
            chunk = ids[offset : offset + DEX_BATCH_MAX_ADDRESSES]
            data = await self._fetch_dex(f"tokens/{','.join(chunk)}")
            best = self._best_pairs(self._chain_pairs(data))
            for token_id in chunk:
                pair = best.get(_match_key(token_id))
                price = _float(pair.get("priceUsd")) if pair is not None else 0.0
                if price > 0:
                    out[token_id] = price
        return out

    async def get_token_data(self, token_id: str) -> dict[str, Any]:
        return self._format_token_data(await self._best_pair(token_id))

    async def _search(self) -> list[dict[str, Any]]:
        pairs: list[dict[str, Any]] = []
        for query in DEX_SEARCH_QUERIES:
            data = await self._fetch_dex("search", params={"q": query})
            pairs.extend(self._chain_pairs(data))
        return [self._format_token_data(pair) for pair in self._best_pairs(pairs).values()]

    async def get_top_tokens(self, limit: int) -> list[dict[str, Any]]:
        tokens = await self._search()
        tokens.sort(key=lambda row: row["volume_24h"], reverse=True)
        return tokens[: max(0, int(limit))]

    async def discover(self, min_liquidity: float, min_volume_24h: float, limit: int) -> list[dict[str, Any]]:
        tokens = await self._search()
        qualified = [
            row
            for row in tokens
            if row["liquidity"] >= float(min_liquidity) and row["volume_24h"] >= float(min_volume_24h)
        ]
        qualified.sort(key=lambda row: row["volume_24h"], reverse=True)
        logger.debug(
            "DISCOVERY_RESULT source=%s seen=%s qualified=%s limit=%s",
            self.name,
            len(tokens),
            len(qualified),
            limit,
        )
        return qualified[: max(0, int(limit))]

    async def _top_pool(self, token_id: str) -> str:
        key = _match_key(token_id)
        pool = self._pool_by_token.get(key)
        if pool:
            return pool
        data = await self._fetch_gecko(f"networks/{GECKO_NETWORK}/tokens/{token_id}/pools", params={"page": 1})
        rows = (data or {}).get("data") if isinstance(data, dict) else None
        if not rows:
            raise UnresolvedKeyError(token_id, f"no geckoterminal pool for token {token_id}")
        pool = str((rows[0].get("attributes") or {}).get("address") or "")
        if not pool:
            raise UnresolvedKeyError(token_id, f"no geckoterminal pool for token {token_id}")
        self._pool_by_token[key] = pool
        return pool

    async def get_historical(
        self,
        token_id: str,
        start: datetime,
        end: datetime,
        interval: str,
    ) -> list[dict[str, float]]:
        step = interval_seconds(interval)
        timeframe, aggregate = gecko_timeframe(step)
        start_ts = int(start.timestamp())
        end_ts = int(end.timestamp())
        limit = min(GECKO_OHLCV_MAX_LIMIT, max(1, math.ceil((end_ts - start_ts) / step)))
        pool = await self._top_pool(token_id)
        data = await self._fetch_gecko(
            f"networks/{GECKO_NETWORK}/pools/{pool}/ohlcv/{timeframe}",
            params={
                "aggregate": aggregate,
                "before_timestamp": end_ts,
                "limit": limit,
                "currency": "usd",
            },
        )
        try:
            rows = data["data"]["attributes"]["ohlcv_list"]
        except (KeyError, TypeError) as exc:
            raise PermanentRequestError(f"malformed ohlcv payload for {token_id}") from exc

        series: list[dict[str, float]] = []
        for row in rows or []:
            if not isinstance(row, (list, tuple)) or len(row) < 6:
                continue
            ts = _float(row[0])
            if ts < start_ts or ts > end_ts:
                continue
            series.append({"timestamp": ts, "price": _float(row[4]), "volume": _float(row[5])})
        series.sort(key=lambda point: point["timestamp"])
        return series
