"""Wires cache, dispatcher, provider and scheduler into one control surface."""

from __future__ import annotations

import logging
from typing import Any

from market.cache_store import MarketDataCache
from market.data_service import MarketDataService
from market.dispatcher import RequestDispatcher
from monitor.dexscreener import DexScreenerProvider
from trading.collaborators import CycleObserver, PositionPolicy, PriceProvider, StrategyEngine, TokenDiscovery
from trading.cycle_metrics import CycleReport
from trading.cycle_scheduler import CycleScheduler, SchedulerState
from trading.observers import LoggingObserver
from trading.paper_positions import PaperPositionBook
from trading.strategy import MomentumStrategy

logger = logging.getLogger(__name__)


class TradingEngine:
    """One bot instance. Owns its own cache, rate windows and breaker; nothing is shared globally."""

    def __init__(
        self,
        scheduler: CycleScheduler,
        market: MarketDataService,
        dispatcher: RequestDispatcher,
        closeables: list[Any] | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.market = market
        self.dispatcher = dispatcher
        self._closeables = list(closeables or [])
        self._closed = False

    @classmethod
    def from_config(
        cls,
        provider: PriceProvider | None = None,
        discovery: TokenDiscovery | None = None,
        strategy: StrategyEngine | None = None,
        positions: PositionPolicy | None = None,
        observer: CycleObserver | None = None,
    ) -> "TradingEngine":
        closeables: list[Any] = []
        if provider is None:
            provider = DexScreenerProvider()
            closeables.append(provider)
        if discovery is None and hasattr(provider, "discover"):
            discovery = provider  # type: ignore[assignment]
        dispatcher = RequestDispatcher.from_config()
        market = MarketDataService.from_config(
            provider=provider,
            dispatcher=dispatcher,
            cache=MarketDataCache.from_config(),
            discovery=discovery,
        )
        scheduler = CycleScheduler.from_config(
            market=market,
            strategy=strategy or MomentumStrategy.from_config(),
            positions=positions or PaperPositionBook.from_config(),
            observer=observer or LoggingObserver(),
        )
        return cls(scheduler=scheduler, market=market, dispatcher=dispatcher, closeables=closeables)

    @property
    def state(self) -> SchedulerState:
        return self.scheduler.state

    async def start(self) -> bool:
        if self._closed:
            raise RuntimeError("engine is closed")
        self.dispatcher.start()
        return await self.scheduler.start()

    async def stop(self) -> bool:
        return await self.scheduler.stop()

    def pause(self) -> bool:
        return self.scheduler.pause()

    def resume(self) -> bool:
        return self.scheduler.resume()

    async def run_cycle_once(self) -> CycleReport:
        if self._closed:
            raise RuntimeError("engine is closed")
        return await self.scheduler.run_cycle_once()

    def get_metrics(self) -> dict[str, Any]:
        out = self.scheduler.snapshot()
        out["dispatcher"] = self.dispatcher.snapshot_stats()
        snapshot = getattr(self.scheduler.positions, "snapshot", None)
        if callable(snapshot):
            out["positions"] = snapshot()
        return out

    def get_cache_stats(self) -> dict[str, Any]:
        return self.market.stats()

    def clear_caches(self) -> int:
        return self.market.invalidate_all()

    async def close(self) -> None:
        if self._closed:
            return
        if self.scheduler.state != SchedulerState.IDLE:
            await self.scheduler.stop()
        self._closed = True
        await self.scheduler.wait_idle()
        await self.dispatcher.close()
        for resource in self._closeables:
            await resource.close()
        logger.info("ENGINE_CLOSED cycles=%s", self.scheduler.metrics.cycle_count)
