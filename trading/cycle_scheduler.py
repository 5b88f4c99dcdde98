"""Recurring, non-overlapping decision cycles with batched token analysis.

State machine::

    IDLE --start()--> RUNNING <--pause()/resume()--> PAUSED
    RUNNING/PAUSED --stop()--> STOPPING --(in-flight cycle done)--> IDLE

The timer task is the only source of scheduled cycle starts. A tick that
arrives while a cycle is still running is dropped and counted, never queued.
A tick that arrives while paused is ignored and counted.

One cycle:

1. breaker open: skip, report ``CircuitOpenError`` to the observer, touch nothing
2. qualified tokens from the market data service (cached, discovery on miss)
3. tokens in fixed-width batches; each batch runs in parallel and is joined
   before the next one starts, with optional pacing in between; a stop
   request is honoured between batches
4. open positions re-checked against current prices
5. metrics and breaker updated
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import Any, Callable

import config
from market.data_service import MarketDataService
from trading.circuit_breaker import CircuitBreaker
from trading.collaborators import (
    EVENT_ERROR,
    EVENT_INFO,
    EVENT_TRADE,
    EVENT_WARNING,
    CycleEvent,
    CycleObserver,
    PositionPolicy,
    StrategyEngine,
)
from trading.cycle_metrics import (
    CYCLE_BREAKER_OPEN,
    CYCLE_BUSY,
    CYCLE_FAILED,
    CYCLE_OK,
    CYCLE_STOPPING,
    CycleMetrics,
    CycleReport,
)
from utils.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class SchedulerState(str, enum.Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    STOPPING = "STOPPING"


class CycleScheduler:
    def __init__(
        self,
        market: MarketDataService,
        strategy: StrategyEngine,
        positions: PositionPolicy,
        breaker: CircuitBreaker,
        metrics: CycleMetrics | None = None,
        observer: CycleObserver | None = None,
        interval_seconds: float = 60.0,
        batch_size: int = 5,
        batch_pacing_seconds: float = 0.0,
        max_tokens: int = 50,
        min_liquidity: float = 0.0,
        min_volume_24h: float = 0.0,
        min_confidence: float = 0.0,
        min_history_points: int = 20,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.market = market
        self.strategy = strategy
        self.positions = positions
        self.breaker = breaker
        self.metrics = metrics or CycleMetrics()
        self.observer = observer
        self.interval_seconds = max(0.001, float(interval_seconds))
        self.batch_size = max(1, int(batch_size))
        self.batch_pacing_seconds = max(0.0, float(batch_pacing_seconds))
        self.max_tokens = max(1, int(max_tokens))
        self.min_liquidity = float(min_liquidity)
        self.min_volume_24h = float(min_volume_24h)
        self.min_confidence = float(min_confidence)
        self.min_history_points = max(1, int(min_history_points))
        self._wall_clock = wall_clock
        self._state = SchedulerState.IDLE
        self._timer_task: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None

    @classmethod
    def from_config(
        cls,
        market: MarketDataService,
        strategy: StrategyEngine,
        positions: PositionPolicy,
        observer: CycleObserver | None = None,
    ) -> "CycleScheduler":
        return cls(
            market=market,
            strategy=strategy,
            positions=positions,
            breaker=CircuitBreaker.from_config(),
            metrics=CycleMetrics(history_size=config.CYCLE_HISTORY_SIZE),
            observer=observer,
            interval_seconds=config.CYCLE_INTERVAL_SECONDS,
            batch_size=config.BATCH_SIZE,
            batch_pacing_seconds=config.BATCH_PACING_SECONDS,
            max_tokens=config.MAX_TOKENS_TO_ANALYZE,
            min_liquidity=config.MIN_LIQUIDITY_USD,
            min_volume_24h=config.MIN_VOLUME_24H_USD,
            min_confidence=config.MIN_CONFIDENCE_THRESHOLD,
            min_history_points=config.MIN_HISTORY_POINTS,
        )

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def _emit(
        self,
        level: str,
        name: str,
        message: str = "",
        error: BaseException | None = None,
        **data: Any,
    ) -> None:
        if self.observer is None:
            return
        event = CycleEvent(level=level, name=name, message=message, data=data, error=error)
        try:
            self.observer.on_event(event)
        except Exception:
            logger.exception("OBSERVER_FAIL event=%s", name)

    async def start(self) -> bool:
        """Start the timer and run the first cycle right away. Returns False if not IDLE."""
        if self._state != SchedulerState.IDLE:
            self._emit(EVENT_WARNING, "scheduler_already_running", state=self._state.value)
            return False
        self._state = SchedulerState.RUNNING
        self._timer_task = asyncio.create_task(self._timer_loop(), name="cycle_timer")
        logger.info(
            "SCHEDULER_START interval=%.1fs batch_size=%s max_tokens=%s",
            self.interval_seconds,
            self.batch_size,
            self.max_tokens,
        )
        self._emit(EVENT_INFO, "scheduler_started", interval_seconds=self.interval_seconds)
        task = self._tick()
        if task is not None:
            await asyncio.shield(task)
        return True

    async def stop(self) -> bool:
        """Cancel the timer, let an in-flight cycle finish, return to IDLE."""
        if self._state in (SchedulerState.IDLE, SchedulerState.STOPPING):
            self._emit(EVENT_WARNING, "scheduler_not_running", state=self._state.value)
            return False
        self._state = SchedulerState.STOPPING
        logger.info("SCHEDULER_STOPPING cycle_in_progress=%s", self.cycle_in_progress)
        timer = self._timer_task
        self._timer_task = None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            await asyncio.gather(cycle, return_exceptions=True)
        self._state = SchedulerState.IDLE
        logger.info("SCHEDULER_STOPPED cycles=%s", self.metrics.cycle_count)
        self._emit(EVENT_INFO, "scheduler_stopped")
        return True

    async def wait_idle(self) -> None:
        """Wait for a cycle already running, timer-driven or manual, to finish."""
        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            await asyncio.gather(cycle, return_exceptions=True)

    def pause(self) -> bool:
        if self._state != SchedulerState.RUNNING:
            return False
        self._state = SchedulerState.PAUSED
        logger.info("SCHEDULER_PAUSED")
        self._emit(EVENT_INFO, "scheduler_paused")
        return True

    def resume(self) -> bool:
        if self._state != SchedulerState.PAUSED:
            return False
        self._state = SchedulerState.RUNNING
        logger.info("SCHEDULER_RESUMED")
        self._emit(EVENT_INFO, "scheduler_resumed")
        return True

    async def _timer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + self.interval_seconds
        while True:
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            next_at += self.interval_seconds
            self._tick()

    def _tick(self) -> asyncio.Task | None:
        if self._state == SchedulerState.PAUSED:
            self.metrics.record_paused_tick()
            return None
        if self._state != SchedulerState.RUNNING:
            return None
        if self.cycle_in_progress:
            self.metrics.record_dropped_tick()
            logger.debug("CYCLE_TICK_DROPPED dropped_total=%s", self.metrics.dropped_ticks)
            return None
        self._cycle_task = asyncio.create_task(self._run_cycle(), name="trading_cycle")
        return self._cycle_task

    async def run_cycle_once(self) -> CycleReport:
        """Run one cycle now, outside the timer. Reports ``busy`` if a cycle is already running."""
        if self.cycle_in_progress:
            self.metrics.record_dropped_tick()
            return CycleReport(status=CYCLE_BUSY, started_at=self._wall_clock())
        if self._state == SchedulerState.STOPPING:
            return CycleReport(status=CYCLE_STOPPING, started_at=self._wall_clock())
        self._cycle_task = asyncio.create_task(self._run_cycle(), name="trading_cycle_manual")
        return await asyncio.shield(self._cycle_task)

    async def _run_cycle(self) -> CycleReport:
        if self.breaker.is_open():
            remaining = self.breaker.cooldown_remaining()
            report = CycleReport(
                status=CYCLE_BREAKER_OPEN,
                started_at=self._wall_clock(),
                error=f"cooldown_remaining={remaining:.1f}s",
            )
            self.metrics.record_skip(report)
            logger.info("CYCLE_SKIP reason=breaker_open cooldown_remaining=%.1fs", remaining)
            self._emit(
                EVENT_WARNING,
                "breaker_open",
                error=CircuitOpenError(remaining),
                cooldown_remaining=round(remaining, 1),
            )
            return report

        started_at = self._wall_clock()
        started = time.perf_counter()
        report = CycleReport(cycle_id=self.metrics.begin_cycle(started_at), started_at=started_at)
        logger.debug("CYCLE_START cycle=%s", report.cycle_id)
        try:
            tokens = await self.market.get_qualified_tokens(
                self.min_liquidity,
                self.min_volume_24h,
                self.max_tokens,
            )
            report.tokens_seen = len(tokens)
            if tokens:
                await self._process_batches(tokens, report)
            else:
                self._emit(EVENT_INFO, "no_qualified_tokens", cycle=report.cycle_id)
            await self._check_positions(report)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            report.status = CYCLE_FAILED
            report.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Cycle error cycle=%s", report.cycle_id)
            tripped = self.breaker.record_failure(exc)
            self._emit(EVENT_ERROR, "cycle_failed", error=exc, cycle=report.cycle_id)
            if tripped:
                self._emit(
                    EVENT_WARNING,
                    "breaker_tripped",
                    f"circuit breaker tripped, cooling down for {self.breaker.cooldown_seconds:.0f}s",
                    consecutive_errors=self.breaker.consecutive_errors,
                    cooldown_seconds=self.breaker.cooldown_seconds,
                )
        else:
            report.status = CYCLE_OK
            self.breaker.record_success()
        finally:
            report.duration_seconds = time.perf_counter() - started

        self.metrics.finish_cycle(report)
        logger.info(
            "CYCLE_DONE cycle=%s status=%s tokens=%s analyzed=%s token_errors=%s opened=%s closed=%s duration=%.2fs",
            report.cycle_id,
            report.status,
            report.tokens_seen,
            report.tokens_analyzed,
            report.token_errors,
            report.positions_opened,
            report.positions_closed,
            report.duration_seconds,
        )
        return report

    async def _process_batches(self, tokens: list[dict[str, Any]], report: CycleReport) -> None:
        for index in range(0, len(tokens), self.batch_size):
            if index > 0 and self.batch_pacing_seconds > 0:
                await asyncio.sleep(self.batch_pacing_seconds)
            if self._state == SchedulerState.STOPPING:
                report.stopped_early = True
                logger.info("CYCLE_STOP_REQUESTED cycle=%s remaining=%s", report.cycle_id, len(tokens) - index)
                return
            batch = tokens[index : index + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._process_token(token, report) for token in batch),
                return_exceptions=True,
            )
            report.batches += 1
            for token, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    report.token_errors += 1
                    token_id = str(token.get("address") or "")
                    logger.warning("TOKEN_PROCESS_FAIL cycle=%s token=%s err=%s", report.cycle_id, token_id, outcome)
                    self._emit(EVENT_ERROR, "token_failed", error=outcome, cycle=report.cycle_id, token=token_id)

    async def _process_token(self, token: dict[str, Any], report: CycleReport) -> None:
        token_id = str(token.get("address") or "").strip()
        if not token_id or self.positions.has_position(token_id):
            return
        data = await self.market.prepare_token_analysis_data(token_id)
        if len(data.get("prices") or []) < self.min_history_points:
            report.insufficient_history += 1
            logger.debug("TOKEN_SKIP token=%s reason=insufficient_history points=%s", token_id, len(data.get("prices") or []))
            return

        signal = self.strategy.analyze(token_id, data)
        report.tokens_analyzed += 1
        if not signal.is_buy or signal.confidence < self.min_confidence:
            return
        report.signals += 1
        if not self.positions.can_open():
            logger.debug("TOKEN_SKIP token=%s reason=position_limit confidence=%.2f", token_id, signal.confidence)
            return

        price = signal.price or data.get("current_price") or (data.get("prices") or [0.0])[-1]
        position = self.positions.open_position(token_id, float(price), signal)
        if position is not None:
            report.positions_opened += 1
            self._emit(
                EVENT_TRADE,
                "position_opened",
                cycle=report.cycle_id,
                token=token_id,
                price=price,
                confidence=signal.confidence,
                reason=signal.reason,
            )

    async def _check_positions(self, report: CycleReport) -> None:
        open_positions = self.positions.open_positions()
        if not open_positions:
            return
        token_ids = [str(getattr(position, "token_id", position)) for position in open_positions]
        prices = await self.market.get_batch_prices(token_ids)
        if not prices:
            return
        closed = self.positions.check_positions(prices)
        report.positions_closed += len(closed)
        for position in closed:
            self._emit(
                EVENT_TRADE,
                "position_closed",
                cycle=report.cycle_id,
                token=getattr(position, "token_id", ""),
                exit_price=getattr(position, "exit_price", None),
                pnl_usd=round(float(getattr(position, "pnl_usd", 0.0) or 0.0), 4),
                reason=getattr(position, "close_reason", ""),
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "cycle_in_progress": self.cycle_in_progress,
            "interval_seconds": self.interval_seconds,
            "metrics": self.metrics.snapshot(),
            "breaker": self.breaker.snapshot(),
        }
