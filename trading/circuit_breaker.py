"""Consecutive-failure circuit breaker for the cycle scheduler."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import config

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """CLOSED until ``max_consecutive_errors`` failures in a row, then OPEN for a fixed cooldown.

    The cooldown is stamped once when the breaker trips and is not extended by
    failures recorded while it is open. One success closes it immediately.
    """

    def __init__(
        self,
        max_consecutive_errors: int = 3,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_consecutive_errors = max(1, int(max_consecutive_errors))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._clock = clock
        self.tripped = False
        self.consecutive_errors = 0
        self.cooldown_until: float | None = None
        self.last_error: str = ""
        self.trips = 0

    @classmethod
    def from_config(cls) -> "CircuitBreaker":
        return cls(
            max_consecutive_errors=config.BREAKER_MAX_CONSECUTIVE_ERRORS,
            cooldown_seconds=config.BREAKER_COOLDOWN_SECONDS,
        )

    def cooldown_remaining(self) -> float:
        if not self.tripped or self.cooldown_until is None:
            return 0.0
        return max(0.0, self.cooldown_until - self._clock())

    def is_open(self) -> bool:
        """True while tripped and cooling down. Closes the breaker once the cooldown has elapsed."""
        if not self.tripped:
            return False
        if self.cooldown_until is not None and self._clock() >= self.cooldown_until:
            self._close()
            logger.info("BREAKER_CLOSED reason=cooldown_elapsed")
            return False
        return True

    def record_success(self) -> None:
        was_tripped = self.tripped
        self._close()
        if was_tripped:
            logger.info("BREAKER_CLOSED reason=success")

    def record_failure(self, error: BaseException | str | None = None) -> bool:
        """Count one failed cycle. Returns True when this failure tripped the breaker."""
        self.consecutive_errors += 1
        self.last_error = str(error or "")
        if self.tripped or self.consecutive_errors < self.max_consecutive_errors:
            return False
        self.tripped = True
        self.trips += 1
        self.cooldown_until = self._clock() + self.cooldown_seconds
        logger.warning(
            "BREAKER_OPEN consecutive_errors=%s cooldown=%.1fs last_error=%s",
            self.consecutive_errors,
            self.cooldown_seconds,
            self.last_error,
        )
        return True

    def _close(self) -> None:
        self.tripped = False
        self.consecutive_errors = 0
        self.cooldown_until = None
        self.last_error = ""

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": "OPEN" if self.tripped else "CLOSED",
            "consecutive_errors": self.consecutive_errors,
            "max_consecutive_errors": self.max_consecutive_errors,
            "cooldown_seconds": self.cooldown_seconds,
            "cooldown_remaining_sec": round(self.cooldown_remaining(), 2),
            "trips": self.trips,
            "last_error": self.last_error,
        }
