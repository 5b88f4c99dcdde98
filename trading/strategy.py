"""Momentum signal from moving averages, RSI, volume surge and 24h change."""

from __future__ import annotations

from typing import Any

import config
from trading.collaborators import SIGNAL_BUY, SIGNAL_HOLD, SIGNAL_SELL, Signal

RSI_PERIOD = 14
MAX_ABS_CHANGE_24H = 30.0


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def rsi(prices: list[float], period: int = RSI_PERIOD) -> float | None:
    if len(prices) <= period:
        return None
    gains = 0.0
    losses = 0.0
    for prev, cur in zip(prices[-period - 1 : -1], prices[-period:]):
        delta = cur - prev
        if delta > 0:
            gains += delta
        else:
            losses -= delta
    if losses == 0:
        return 100.0 if gains > 0 else 50.0
    rs = (gains / period) / (losses / period)
    return 100.0 - (100.0 / (1.0 + rs))


class MomentumStrategy:
    def __init__(
        self,
        short_window: int = 6,
        long_window: int = 24,
        volume_surge_mult: float = 1.5,
    ) -> None:
        self.short_window = max(2, int(short_window))
        self.long_window = max(self.short_window + 1, int(long_window))
        self.volume_surge_mult = max(1.0, float(volume_surge_mult))

    @classmethod
    def from_config(cls) -> "MomentumStrategy":
        return cls(
            short_window=config.MOMENTUM_SHORT_WINDOW,
            long_window=config.MOMENTUM_LONG_WINDOW,
            volume_surge_mult=config.MOMENTUM_VOLUME_SURGE_MULT,
        )

    def analyze(self, token_id: str, analysis_data: dict[str, Any]) -> Signal:
        prices = [float(p) for p in (analysis_data.get("prices") or []) if p and float(p) > 0]
        volumes = [float(v or 0) for v in (analysis_data.get("volumes") or [])]
        change_24h = float(analysis_data.get("price_change_24h") or 0.0)
        price = float(analysis_data.get("current_price") or 0.0) or (prices[-1] if prices else None)

        if len(prices) < self.long_window:
            return Signal(SIGNAL_HOLD, 0.0, "insufficient_history", price)
        if abs(change_24h) > MAX_ABS_CHANGE_24H:
            return Signal(SIGNAL_HOLD, 0.0, f"volatile_24h change={change_24h:.1f}%", price)

        short_ma = _mean(prices[-self.short_window :])
        long_ma = _mean(prices[-self.long_window :])
        trend_pct = ((short_ma / long_ma) - 1.0) * 100.0 if long_ma > 0 else 0.0
        volume_ratio = self._volume_ratio(volumes)
        rsi_value = rsi(prices)

        buy = 0.0
        sell = 0.0
        reasons: list[str] = [f"trend={trend_pct:.2f}%"]

        trend_score = self._score_trend(abs(trend_pct))
        if trend_pct > 0:
            buy += trend_score
        elif trend_pct < 0:
            sell += trend_score

        if volume_ratio >= self.volume_surge_mult:
            reasons.append(f"volume_surge={volume_ratio:.2f}x")
            if trend_pct > 0:
                buy += 0.2
            elif trend_pct < 0:
                sell += 0.2

        if rsi_value is not None:
            reasons.append(f"rsi={rsi_value:.0f}")
            if rsi_value >= 75:
                sell += 0.2
            elif 50 <= rsi_value < 70:
                buy += 0.15
            elif rsi_value <= 25:
                buy += 0.1

        if change_24h > 5:
            buy += 0.1
        elif change_24h < -5:
            sell += 0.1

        reason = " ".join(reasons)
        if buy > sell and buy > 0:
            return Signal(SIGNAL_BUY, round(min(1.0, buy - sell * 0.5), 4), reason, price)
        if sell > buy and sell > 0:
            return Signal(SIGNAL_SELL, round(min(1.0, sell - buy * 0.5), 4), reason, price)
        return Signal(SIGNAL_HOLD, 0.0, reason, price)

    def _volume_ratio(self, volumes: list[float]) -> float:
        if len(volumes) < self.long_window:
            return 0.0
        baseline = _mean(volumes[-self.long_window : -self.short_window])
        recent = _mean(volumes[-self.short_window :])
        if baseline <= 0:
            return 0.0
        return recent / baseline

    @staticmethod
    def _score_trend(abs_trend_pct: float) -> float:
        if abs_trend_pct >= 10:
            return 0.5
        if abs_trend_pct >= 5:
            return 0.4
        if abs_trend_pct >= 2:
            return 0.3
        if abs_trend_pct >= 0.5:
            return 0.15
        return 0.0
