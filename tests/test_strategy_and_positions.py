from __future__ import annotations

import unittest

from trading.collaborators import SIGNAL_BUY, SIGNAL_HOLD, SIGNAL_SELL, Signal
from trading.paper_positions import CLOSE_STOP_LOSS, CLOSE_TAKE_PROFIT, PaperPositionBook
from trading.strategy import MomentumStrategy, rsi


def series(start: float, step_pct: float, points: int) -> list[float]:
    return [start * (1.0 + step_pct / 100.0) ** i for i in range(points)]


def surging_volumes(points: int, recent: int = 6) -> list[float]:
    return [100.0] * (points - recent) + [300.0] * recent


class MomentumStrategyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.strategy = MomentumStrategy(short_window=6, long_window=24, volume_surge_mult=1.5)

    def test_short_history_holds(self) -> None:
        signal = self.strategy.analyze("tok", {"prices": series(1.0, 1.0, 10), "volumes": [1.0] * 10})
        self.assertEqual(signal.action, SIGNAL_HOLD)
        self.assertEqual(signal.reason, "insufficient_history")

    def test_extreme_daily_move_holds(self) -> None:
        signal = self.strategy.analyze(
            "tok",
            {"prices": series(1.0, 1.0, 30), "volumes": surging_volumes(30), "price_change_24h": 45.0},
        )
        self.assertEqual(signal.action, SIGNAL_HOLD)
        self.assertTrue(signal.reason.startswith("volatile_24h"))

    def test_uptrend_with_volume_surge_buys(self) -> None:
        prices = series(1.0, 1.0, 30)
        signal = self.strategy.analyze(
            "tok",
            {"prices": prices, "volumes": surging_volumes(30), "price_change_24h": 10.0, "current_price": prices[-1]},
        )
        self.assertEqual(signal.action, SIGNAL_BUY)
        self.assertGreaterEqual(signal.confidence, 0.5)
        self.assertLessEqual(signal.confidence, 1.0)
        self.assertIn("volume_surge", signal.reason)
        self.assertAlmostEqual(signal.price, prices[-1])

    def test_downtrend_with_volume_surge_sells(self) -> None:
        signal = self.strategy.analyze(
            "tok",
            {"prices": series(1.0, -1.0, 30), "volumes": surging_volumes(30), "price_change_24h": -10.0},
        )
        self.assertEqual(signal.action, SIGNAL_SELL)
        self.assertGreaterEqual(signal.confidence, 0.5)

    def test_rsi_bounds(self) -> None:
        self.assertIsNone(rsi([1.0] * 5))
        self.assertEqual(rsi(series(1.0, 1.0, 20)), 100.0)
        self.assertEqual(rsi(series(1.0, -1.0, 20)), 0.0)
        self.assertEqual(rsi([2.0] * 20), 50.0)


class PaperPositionBookTests(unittest.TestCase):
    def setUp(self) -> None:
        self.book = PaperPositionBook(
            balance_usd=1000,
            trade_size_percent=2,
            stop_loss_percent=5,
            take_profit_percent=15,
            max_open_positions=2,
            clock=lambda: 1234.0,
        )
        self.signal = Signal(SIGNAL_BUY, 0.8, "test")

    def test_open_sizes_position_from_balance(self) -> None:
        position = self.book.open_position("a", 2.0, self.signal)

        self.assertIsNotNone(position)
        self.assertEqual(position.size_usd, 20.0)
        self.assertEqual(position.quantity, 10.0)
        self.assertAlmostEqual(position.stop_loss_price, 1.9)
        self.assertAlmostEqual(position.take_profit_price, 2.3)
        self.assertEqual(position.opened_at, 1234.0)
        self.assertEqual(self.book.balance_usd, 980.0)

    def test_rejects_invalid_price_duplicates_and_cap(self) -> None:
        self.assertIsNone(self.book.open_position("a", 0.0, self.signal))
        self.assertIsNotNone(self.book.open_position("a", 1.0, self.signal))
        self.assertIsNone(self.book.open_position("a", 1.0, self.signal))
        self.assertIsNotNone(self.book.open_position("b", 1.0, self.signal))
        self.assertFalse(self.book.can_open())
        self.assertIsNone(self.book.open_position("c", 1.0, self.signal))
        self.assertEqual(len(self.book.open_positions()), 2)

    def test_stop_loss_and_take_profit_close_positions(self) -> None:
        self.book.open_position("down", 1.0, self.signal)
        up = self.book.open_position("up", 1.0, self.signal)
        # Sized from the balance left after the first open.
        self.assertAlmostEqual(up.size_usd, 19.6)

        closed = self.book.check_positions({"down": 0.94, "up": 1.2, "other": 5.0})

        reasons = {p.token_id: p.close_reason for p in closed}
        self.assertEqual(reasons, {"down": CLOSE_STOP_LOSS, "up": CLOSE_TAKE_PROFIT})
        self.assertEqual(self.book.open_positions(), [])
        by_token = {p.token_id: p for p in closed}
        self.assertAlmostEqual(by_token["down"].pnl_usd, -1.2)
        self.assertAlmostEqual(by_token["up"].pnl_usd, 3.92)
        self.assertAlmostEqual(self.book.realized_pnl_usd, 2.72)
        self.assertEqual(self.book.snapshot()["closed_count"], 2)

    def test_positions_inside_band_stay_open(self) -> None:
        self.book.open_position("a", 1.0, self.signal)
        self.assertEqual(self.book.check_positions({"a": 1.05}), [])
        self.assertEqual(self.book.check_positions({}), [])
        self.assertTrue(self.book.has_position("a"))


if __name__ == "__main__":
    unittest.main()
