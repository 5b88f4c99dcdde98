"""Interfaces the engine depends on, plus the small values passed across them."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

SIGNAL_BUY = "BUY"
SIGNAL_SELL = "SELL"
SIGNAL_HOLD = "HOLD"

EVENT_INFO = "info"
EVENT_WARNING = "warning"
EVENT_ERROR = "error"
EVENT_TRADE = "trade"


@dataclass(frozen=True)
class Signal:
    action: str = SIGNAL_HOLD
    confidence: float = 0.0
    reason: str = ""
    price: float | None = None

    @property
    def is_buy(self) -> bool:
        return self.action == SIGNAL_BUY


@dataclass(frozen=True)
class CycleEvent:
    level: str
    name: str
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class PriceProvider(Protocol):
    name: str

    async def get_price(self, token_id: str) -> float: ...

    async def get_batch_prices(self, token_ids: list[str]) -> dict[str, float]: ...

    async def get_historical(
        self,
        token_id: str,
        start: datetime,
        end: datetime,
        interval: str,
    ) -> list[dict[str, float]]: ...

    async def get_top_tokens(self, limit: int) -> list[dict[str, Any]]: ...

    async def get_token_data(self, token_id: str) -> dict[str, Any]: ...


@runtime_checkable
class TokenDiscovery(Protocol):
    name: str

    async def discover(self, min_liquidity: float, min_volume_24h: float, limit: int) -> list[dict[str, Any]]: ...


@runtime_checkable
class StrategyEngine(Protocol):
    def analyze(self, token_id: str, analysis_data: dict[str, Any]) -> Signal: ...


@runtime_checkable
class PositionPolicy(Protocol):
    def has_position(self, token_id: str) -> bool: ...

    def open_positions(self) -> list[Any]: ...

    def can_open(self) -> bool: ...

    def open_position(self, token_id: str, price: float, signal: Signal) -> Any: ...

    def check_positions(self, prices: dict[str, float]) -> list[Any]: ...


@runtime_checkable
class CycleObserver(Protocol):
    def on_event(self, event: CycleEvent) -> None: ...
