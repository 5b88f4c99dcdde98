from __future__ import annotations

import unittest

from trading.circuit_breaker import CircuitBreaker


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CircuitBreakerTests(unittest.TestCase):
    def test_trips_after_consecutive_failures_only(self) -> None:
        breaker = CircuitBreaker(max_consecutive_errors=3, cooldown_seconds=60, clock=FakeClock())
        self.assertFalse(breaker.record_failure("a"))
        self.assertFalse(breaker.record_failure("b"))
        breaker.record_success()
        self.assertEqual(breaker.consecutive_errors, 0)

        self.assertFalse(breaker.record_failure("c"))
        self.assertFalse(breaker.record_failure("d"))
        self.assertTrue(breaker.record_failure("e"))
        self.assertTrue(breaker.is_open())
        self.assertEqual(breaker.trips, 1)
        self.assertEqual(breaker.snapshot()["state"], "OPEN")

    def test_cooldown_fixed_from_original_trip(self) -> None:
        clock = FakeClock(100.0)
        breaker = CircuitBreaker(max_consecutive_errors=1, cooldown_seconds=10, clock=clock)
        breaker.record_failure("first")
        self.assertEqual(breaker.cooldown_until, 110.0)

        clock.now = 105.0
        self.assertFalse(breaker.record_failure("while open"))
        self.assertEqual(breaker.cooldown_until, 110.0)
        self.assertAlmostEqual(breaker.cooldown_remaining(), 5.0)

        clock.now = 109.9
        self.assertTrue(breaker.is_open())
        clock.now = 110.0
        self.assertFalse(breaker.is_open())
        self.assertEqual(breaker.consecutive_errors, 0)
        self.assertIsNone(breaker.cooldown_until)

    def test_success_closes_open_breaker(self) -> None:
        breaker = CircuitBreaker(max_consecutive_errors=1, cooldown_seconds=300, clock=FakeClock())
        breaker.record_failure(RuntimeError("x"))
        self.assertTrue(breaker.tripped)
        breaker.record_success()
        self.assertFalse(breaker.is_open())
        self.assertEqual(breaker.snapshot()["last_error"], "")


if __name__ == "__main__":
    unittest.main()
