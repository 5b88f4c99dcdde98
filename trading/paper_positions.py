"""In-memory paper positions with stop-loss, take-profit and an open-position cap."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable

import config
from trading.collaborators import Signal

logger = logging.getLogger(__name__)

CLOSE_STOP_LOSS = "stop_loss"
CLOSE_TAKE_PROFIT = "take_profit"


@dataclass
class PaperPosition:
    token_id: str
    entry_price: float
    size_usd: float
    quantity: float
    opened_at: float
    stop_loss_price: float
    take_profit_price: float
    confidence: float = 0.0
    closed_at: float | None = None
    exit_price: float | None = None
    pnl_usd: float = 0.0
    pnl_percent: float = 0.0
    close_reason: str = ""

    @property
    def is_open(self) -> bool:
        return self.closed_at is None


class PaperPositionBook:
    def __init__(
        self,
        balance_usd: float = 1000.0,
        trade_size_percent: float = 2.0,
        stop_loss_percent: float = 5.0,
        take_profit_percent: float = 15.0,
        max_open_positions: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.balance_usd = max(0.0, float(balance_usd))
        self.trade_size_percent = max(0.0, float(trade_size_percent))
        self.stop_loss_percent = max(0.0, float(stop_loss_percent))
        self.take_profit_percent = max(0.0, float(take_profit_percent))
        self.max_open_positions = max(0, int(max_open_positions))
        self._clock = clock
        self._open: dict[str, PaperPosition] = {}
        self.closed: list[PaperPosition] = []
        self.realized_pnl_usd = 0.0

    @classmethod
    def from_config(cls) -> "PaperPositionBook":
        return cls(
            balance_usd=config.PAPER_BALANCE_USD,
            trade_size_percent=config.TRADE_SIZE_PERCENT,
            stop_loss_percent=config.STOP_LOSS_PERCENT,
            take_profit_percent=config.TAKE_PROFIT_PERCENT,
            max_open_positions=config.MAX_OPEN_POSITIONS,
        )

    def has_position(self, token_id: str) -> bool:
        return token_id in self._open

    def open_positions(self) -> list[PaperPosition]:
        return list(self._open.values())

    def position_size_usd(self) -> float:
        return round(self.balance_usd * self.trade_size_percent / 100.0, 8)

    def can_open(self) -> bool:
        return len(self._open) < self.max_open_positions and self.position_size_usd() > 0

    def open_position(self, token_id: str, price: float, signal: Signal) -> PaperPosition | None:
        if price is None or float(price) <= 0:
            logger.warning("PAPER_OPEN_SKIP token=%s reason=invalid_price price=%s", token_id, price)
            return None
        if self.has_position(token_id) or not self.can_open():
            return None
        price = float(price)
        size = self.position_size_usd()
        position = PaperPosition(
            token_id=token_id,
            entry_price=price,
            size_usd=size,
            quantity=size / price,
            opened_at=self._clock(),
            stop_loss_price=price * (1.0 - self.stop_loss_percent / 100.0),
            take_profit_price=price * (1.0 + self.take_profit_percent / 100.0),
            confidence=float(signal.confidence),
        )
        self.balance_usd -= size
        self._open[token_id] = position
        logger.info(
            "PAPER_OPEN token=%s price=%s size_usd=%.2f confidence=%.2f",
            token_id,
            price,
            size,
            position.confidence,
        )
        return position

    def check_positions(self, prices: dict[str, float]) -> list[PaperPosition]:
        """Close every open position whose price crossed its stop-loss or take-profit."""
        closed: list[PaperPosition] = []
        for token_id, position in list(self._open.items()):
            price = prices.get(token_id)
            if price is None or float(price) <= 0:
                continue
            price = float(price)
            if price <= position.stop_loss_price:
                reason = CLOSE_STOP_LOSS
            elif price >= position.take_profit_price:
                reason = CLOSE_TAKE_PROFIT
            else:
                continue
            closed.append(self._close(position, price, reason))
        return closed

    def _close(self, position: PaperPosition, price: float, reason: str) -> PaperPosition:
        proceeds = position.quantity * price
        position.closed_at = self._clock()
        position.exit_price = price
        position.pnl_usd = proceeds - position.size_usd
        position.pnl_percent = (price / position.entry_price - 1.0) * 100.0
        position.close_reason = reason
        self.balance_usd += proceeds
        self.realized_pnl_usd += position.pnl_usd
        del self._open[position.token_id]
        self.closed.append(position)
        logger.info(
            "PAPER_CLOSE token=%s reason=%s exit=%s pnl_usd=%.2f pnl_pct=%.2f",
            position.token_id,
            reason,
            price,
            position.pnl_usd,
            position.pnl_percent,
        )
        return position

    def snapshot(self) -> dict[str, Any]:
        return {
            "balance_usd": round(self.balance_usd, 2),
            "realized_pnl_usd": round(self.realized_pnl_usd, 2),
            "open": [asdict(p) for p in self._open.values()],
            "closed_count": len(self.closed),
        }
