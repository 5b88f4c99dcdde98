from __future__ import annotations

import asyncio
import unittest

from trading.collaborators import EVENT_ERROR, EVENT_TRADE, CycleEvent
from trading.cycle_metrics import CYCLE_OK
from trading.cycle_scheduler import SchedulerState
from trading.engine import TradingEngine
from trading.observers import LoggingObserver, ObserverGroup


class StaticProvider:
    name = "static"

    def __init__(self) -> None:
        self.closed = False

    async def discover(self, min_liquidity: float, min_volume_24h: float, limit: int) -> list[dict]:
        return [{"address": "mint", "liquidity": 5e6, "volume_24h": 5e6}]

    async def get_price(self, token_id: str) -> float:
        return 1.0

    async def get_batch_prices(self, token_ids: list[str]) -> dict[str, float]:
        return {t: 1.0 for t in token_ids}

    async def get_historical(self, token_id, start, end, interval) -> list[dict]:
        return [{"timestamp": float(i), "price": 1.0, "volume": 1.0} for i in range(30)]

    async def get_top_tokens(self, limit: int) -> list[dict]:
        return []

    async def get_token_data(self, token_id: str) -> dict:
        return {"address": token_id, "price_usd": 1.0, "liquidity": 5e6, "volume_24h": 5e6}


class SlowDiscoveryProvider(StaticProvider):
    async def discover(self, min_liquidity: float, min_volume_24h: float, limit: int) -> list[dict]:
        await asyncio.sleep(0.2)
        return await super().discover(min_liquidity, min_volume_24h, limit)


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[CycleEvent] = []

    def on_event(self, event: CycleEvent) -> None:
        self.events.append(event)


class BrokenObserver:
    def on_event(self, event: CycleEvent) -> None:
        raise RuntimeError("observer bug")


class TradingEngineTests(unittest.IsolatedAsyncioTestCase):
    async def test_manual_cycle_metrics_and_close(self) -> None:
        provider = StaticProvider()
        recorder = RecordingObserver()
        engine = TradingEngine.from_config(provider=provider, observer=recorder)
        try:
            report = await engine.run_cycle_once()

            self.assertEqual(report.status, CYCLE_OK)
            self.assertEqual(report.tokens_seen, 1)
            self.assertEqual(report.tokens_analyzed, 1)
            metrics = engine.get_metrics()
            self.assertEqual(metrics["state"], SchedulerState.IDLE.value)
            self.assertEqual(metrics["metrics"]["cycle_count"], 1)
            self.assertIn("static", metrics["dispatcher"])
            self.assertIn("positions", metrics)
            self.assertGreater(engine.get_cache_stats()["cache_misses"], 0)
            self.assertGreater(engine.clear_caches(), 0)
        finally:
            await engine.close()

        with self.assertRaises(RuntimeError):
            await engine.run_cycle_once()
        self.assertFalse(provider.closed)

    async def test_start_and_close_stops_scheduler(self) -> None:
        engine = TradingEngine.from_config(provider=StaticProvider(), observer=RecordingObserver())
        self.assertTrue(await engine.start())
        self.assertEqual(engine.state, SchedulerState.RUNNING)
        self.assertTrue(engine.pause())
        self.assertTrue(engine.resume())

        await engine.close()

        self.assertEqual(engine.state, SchedulerState.IDLE)
        with self.assertRaises(RuntimeError):
            await engine.start()

    async def test_close_waits_for_running_manual_cycle(self) -> None:
        engine = TradingEngine.from_config(provider=SlowDiscoveryProvider(), observer=RecordingObserver())
        manual = asyncio.create_task(engine.run_cycle_once())
        await asyncio.sleep(0.05)
        self.assertTrue(engine.scheduler.cycle_in_progress)

        await engine.close()

        report = await manual
        self.assertEqual(report.status, CYCLE_OK)
        self.assertEqual(report.tokens_analyzed, 1)
        self.assertEqual(engine.scheduler.metrics.cycle_count, 1)


class ObserverTests(unittest.TestCase):
    def test_group_skips_failing_observer(self) -> None:
        recorder = RecordingObserver()
        group = ObserverGroup([BrokenObserver(), recorder])
        event = CycleEvent(level=EVENT_ERROR, name="cycle_failed", error=ValueError("x"))

        with self.assertLogs("trading.observers", level="ERROR"):
            group.on_event(event)

        self.assertEqual(recorder.events, [event])
        self.assertEqual(len(group), 2)

    def test_logging_observer_maps_levels(self) -> None:
        observer = LoggingObserver(name="unit.events")
        with self.assertLogs("unit.events", level="INFO") as logs:
            observer.on_event(CycleEvent(level=EVENT_TRADE, name="position_opened", data={"token": "mint"}))
            observer.on_event(CycleEvent(level=EVENT_ERROR, name="cycle_failed", error=ValueError("boom")))

        self.assertEqual(logs.records[0].levelname, "INFO")
        self.assertIn("TRADE position_opened token=mint", logs.output[0])
        self.assertEqual(logs.records[1].levelname, "ERROR")
        self.assertIn("err=boom", logs.output[1])


if __name__ == "__main__":
    unittest.main()
