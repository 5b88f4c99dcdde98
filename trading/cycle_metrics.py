"""Per-cycle counters and a bounded history of cycle reports."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from typing import Any

CYCLE_OK = "ok"
CYCLE_FAILED = "failed"
CYCLE_BREAKER_OPEN = "breaker_open"
CYCLE_BUSY = "busy"
CYCLE_STOPPING = "stopping"


@dataclass
class CycleReport:
    cycle_id: int = 0
    status: str = CYCLE_OK
    started_at: float = 0.0
    duration_seconds: float = 0.0
    tokens_seen: int = 0
    tokens_analyzed: int = 0
    insufficient_history: int = 0
    token_errors: int = 0
    batches: int = 0
    signals: int = 0
    positions_opened: int = 0
    positions_closed: int = 0
    stopped_early: bool = False
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == CYCLE_OK


class CycleMetrics:
    def __init__(self, history_size: int = 50) -> None:
        self.cycle_count = 0
        self.successful_cycles = 0
        self.failed_cycles = 0
        self.skipped_cycles = 0
        self.dropped_ticks = 0
        self.paused_ticks = 0
        self.last_cycle_time: float | None = None
        self.total_cycle_duration = 0.0
        self.history: deque[CycleReport] = deque(maxlen=max(1, int(history_size)))

    @property
    def avg_cycle_duration(self) -> float:
        if self.cycle_count <= 0:
            return 0.0
        return self.total_cycle_duration / self.cycle_count

    def begin_cycle(self, started_at: float) -> int:
        self.cycle_count += 1
        self.last_cycle_time = started_at
        return self.cycle_count

    def finish_cycle(self, report: CycleReport) -> None:
        if report.status == CYCLE_OK:
            self.successful_cycles += 1
        elif report.status == CYCLE_FAILED:
            self.failed_cycles += 1
        self.total_cycle_duration += max(0.0, float(report.duration_seconds))
        self.history.append(report)

    def record_skip(self, report: CycleReport) -> None:
        self.skipped_cycles += 1
        self.history.append(report)

    def record_dropped_tick(self) -> None:
        self.dropped_ticks += 1

    def record_paused_tick(self) -> None:
        self.paused_ticks += 1

    def snapshot(self, recent: int = 10) -> dict[str, Any]:
        tail = list(self.history)[-max(0, int(recent)) :] if recent else []
        return {
            "cycle_count": self.cycle_count,
            "successful_cycles": self.successful_cycles,
            "failed_cycles": self.failed_cycles,
            "skipped_cycles": self.skipped_cycles,
            "dropped_ticks": self.dropped_ticks,
            "paused_ticks": self.paused_ticks,
            "last_cycle_time": self.last_cycle_time,
            "avg_cycle_duration": round(self.avg_cycle_duration, 4),
            "total_cycle_duration": round(self.total_cycle_duration, 4),
            "recent": [asdict(report) for report in tail],
        }
