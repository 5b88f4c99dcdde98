from __future__ import annotations

import asyncio
import time
import unittest

from market.dispatcher import Priority, RateLimitWindow, RequestDispatcher, RetryPolicy
from utils.errors import (
    DispatcherClosedError,
    PermanentRequestError,
    RateLimitedError,
    TransientProviderError,
)


def fast_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.01, max_delay=0.02, jitter=0.0)


class RetryPolicyTests(unittest.TestCase):
    def test_backoff_doubles_and_caps(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=3.0, jitter=0.0)
        self.assertEqual(policy.backoff(1), 0.5)
        self.assertEqual(policy.backoff(2), 1.0)
        self.assertEqual(policy.backoff(3), 2.0)
        self.assertEqual(policy.backoff(4), 3.0)

    def test_default_predicate_retries_only_transient(self) -> None:
        policy = RetryPolicy()
        self.assertTrue(policy.is_retryable(TransientProviderError("timeout")))
        self.assertTrue(policy.is_retryable(RateLimitedError("429")))
        self.assertTrue(policy.is_retryable(asyncio.TimeoutError()))
        self.assertFalse(policy.is_retryable(PermanentRequestError("400")))
        self.assertFalse(policy.is_retryable(ValueError("bad")))


class RateLimitWindowTests(unittest.TestCase):
    def test_window_frees_slot_when_oldest_leaves_period(self) -> None:
        window = RateLimitWindow("p", limit=2, period=1.0)
        window.record(0.0)
        window.record(0.1)
        self.assertAlmostEqual(window.wait_time(0.5), 0.5)
        self.assertEqual(window.wait_time(1.0), 0.0)
        self.assertEqual(window.in_use(1.0), 1)

    def test_saturation_blocks_until_deadline(self) -> None:
        window = RateLimitWindow("p", limit=10, period=1.0)
        window.saturate_for(5.0, now=2.0)
        self.assertAlmostEqual(window.wait_time(3.0), 4.0)
        self.assertEqual(window.wait_time(7.0), 0.0)


class RequestDispatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.dispatchers: list[RequestDispatcher] = []

    async def asyncTearDown(self) -> None:
        for dispatcher in self.dispatchers:
            await dispatcher.close()

    def make(self, **kwargs) -> RequestDispatcher:
        kwargs.setdefault("retry_policy", fast_policy())
        kwargs.setdefault("rate_limit_backoff", 0.0)
        dispatcher = RequestDispatcher(**kwargs)
        self.dispatchers.append(dispatcher)
        return dispatcher

    async def test_rate_limit_defers_third_request_past_period(self) -> None:
        dispatcher = self.make(rate_limits={"p": (2, 0.3)})
        started: list[float] = []

        async def call() -> int:
            started.append(time.monotonic())
            return len(started)

        results = await asyncio.gather(*(dispatcher.submit("p", call) for _ in range(3)))

        self.assertEqual(sorted(results), [1, 2, 3])
        self.assertLess(started[1] - started[0], 0.2)
        self.assertGreaterEqual(started[2] - started[0], 0.29)
        self.assertGreaterEqual(dispatcher.snapshot_stats()["p"]["limiter_waits"], 1)

    async def test_higher_lane_served_first_even_if_enqueued_later(self) -> None:
        dispatcher = self.make(rate_limits={"p": (1, 0.05)})
        order: list[str] = []

        def job(label: str):
            async def run() -> str:
                order.append(label)
                return label

            return run

        low = dispatcher.enqueue("p", job("low"), Priority.LOW)
        medium = dispatcher.enqueue("p", job("medium"), Priority.MEDIUM)
        high = dispatcher.enqueue("p", job("high"), Priority.HIGH)
        await asyncio.gather(low, medium, high)

        self.assertEqual(order, ["high", "medium", "low"])

    async def test_fifo_within_lane(self) -> None:
        dispatcher = self.make(rate_limits={"p": (1, 0.02)})
        order: list[int] = []

        def job(n: int):
            async def run() -> int:
                order.append(n)
                return n

            return run

        futures = [dispatcher.enqueue("p", job(n), Priority.MEDIUM) for n in range(4)]
        await asyncio.gather(*futures)
        self.assertEqual(order, [0, 1, 2, 3])

    async def test_saturated_provider_does_not_block_others(self) -> None:
        dispatcher = self.make(rate_limits={"slow": (1, 30.0)})

        async def ok() -> str:
            return "ok"

        first_slow = await dispatcher.submit("slow", ok)
        blocked = dispatcher.enqueue("slow", ok)
        fast = await asyncio.wait_for(dispatcher.submit("fast", ok), timeout=1.0)

        self.assertEqual(first_slow, "ok")
        self.assertEqual(fast, "ok")
        self.assertFalse(blocked.done())
        self.assertEqual(dispatcher.queue_depth("slow"), 1)

    async def test_transient_failures_retried_until_success(self) -> None:
        dispatcher = self.make()
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientProviderError("503")
            return "done"

        self.assertEqual(await dispatcher.submit("p", flaky), "done")
        self.assertEqual(calls, 3)
        stats = dispatcher.snapshot_stats()["p"]
        self.assertEqual(stats["retries"], 2)
        self.assertEqual(stats["ok"], 1)

    async def test_transient_failure_surfaces_after_attempt_ceiling(self) -> None:
        dispatcher = self.make(retry_policy=fast_policy(max_attempts=2))
        calls = 0

        async def down() -> None:
            nonlocal calls
            calls += 1
            raise TransientProviderError("502")

        with self.assertRaises(TransientProviderError):
            await dispatcher.submit("p", down)
        self.assertEqual(calls, 2)
        self.assertEqual(dispatcher.snapshot_stats()["p"]["fail"], 1)

    async def test_permanent_failure_not_retried(self) -> None:
        dispatcher = self.make()
        calls = 0

        async def bad() -> None:
            nonlocal calls
            calls += 1
            raise PermanentRequestError("404")

        with self.assertRaises(PermanentRequestError):
            await dispatcher.submit("p", bad)
        self.assertEqual(calls, 1)

    async def test_unknown_exception_classified_permanent(self) -> None:
        dispatcher = self.make()

        async def broken() -> None:
            raise KeyError("price")

        with self.assertRaises(PermanentRequestError) as ctx:
            await dispatcher.submit("p", broken)
        self.assertIsInstance(ctx.exception.__cause__, KeyError)
        self.assertEqual(ctx.exception.provider, "p")

    async def test_per_call_timeout_is_transient(self) -> None:
        dispatcher = self.make(retry_policy=fast_policy(max_attempts=1), request_timeout=0.05)

        async def slow() -> None:
            await asyncio.sleep(5)

        with self.assertRaises(TransientProviderError):
            await dispatcher.submit("p", slow)

    async def test_rate_limited_response_blocks_provider_for_retry_after(self) -> None:
        dispatcher = self.make(retry_policy=RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0))
        started: list[float] = []

        async def limited() -> str:
            started.append(time.monotonic())
            if len(started) == 1:
                raise RateLimitedError("429", retry_after=0.2)
            return "ok"

        self.assertEqual(await dispatcher.submit("p", limited), "ok")
        self.assertGreaterEqual(started[1] - started[0], 0.19)
        self.assertEqual(dispatcher.snapshot_stats()["p"]["rate_limited"], 1)

    async def test_close_rejects_queued_requests(self) -> None:
        dispatcher = self.make(rate_limits={"p": (1, 30.0)})

        async def ok() -> str:
            return "ok"

        await dispatcher.submit("p", ok)
        queued = dispatcher.enqueue("p", ok)
        await dispatcher.close()

        with self.assertRaises(DispatcherClosedError):
            await queued
        with self.assertRaises(DispatcherClosedError):
            dispatcher.enqueue("p", ok)

    async def test_close_fails_running_request_with_closed_error(self) -> None:
        dispatcher = self.make()
        started = asyncio.Event()

        async def slow() -> str:
            started.set()
            await asyncio.sleep(5)
            return "late"

        running = dispatcher.enqueue("p", slow)
        await started.wait()
        await dispatcher.close()

        self.assertFalse(running.cancelled())
        with self.assertRaises(DispatcherClosedError):
            await running


if __name__ == "__main__":
    unittest.main()
