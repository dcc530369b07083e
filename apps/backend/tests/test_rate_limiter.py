import asyncio
import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from maestro.errors import RateLimitExceededError
from maestro.safety.rate_limiter import (
    RateLimitDefinition,
    RateLimiter,
    backoff_delay,
    is_rate_limit_error,
)

from support import FakeClock


class RateLimiterWindowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(clock=self.clock, sleep=self.clock.sleep)

    def test_gmail_send_denies_the_101st_call_in_a_day(self):
        allowed = [self.limiter.check_limit("gmail", "send") for _ in range(100)]

        self.assertTrue(all(allowed))
        self.assertFalse(self.limiter.check_limit("gmail", "send"))

        status = self.limiter.get_status("gmail", "send")
        self.assertTrue(status.limited)
        self.assertEqual(status.current_usage, 100)
        self.assertEqual(status.limit, 100)
        self.assertGreater(status.retry_after, 0)

    def test_window_reset_restarts_the_count(self):
        for _ in range(100):
            self.limiter.check_limit("gmail", "send")
        self.assertFalse(self.limiter.check_limit("gmail", "send"))

        self.clock.now += 86_400

        self.assertTrue(self.limiter.check_limit("gmail", "send"))
        self.assertEqual(self.limiter.get_status("gmail", "send").current_usage, 1)

    def test_unknown_keys_are_never_limited(self):
        for _ in range(1000):
            self.assertTrue(self.limiter.check_limit("fax", "send"))
        self.assertEqual(self.limiter.get_all_limits(), {})

    def test_first_call_initialises_and_counts(self):
        self.assertTrue(self.limiter.check_limit("claude", "generate"))

        limits = self.limiter.get_all_limits()
        self.assertEqual(limits["claude:generate"].current_count, 1)
        self.assertEqual(limits["claude:generate"].limit, 60)

    def test_reset_clears_a_single_key(self):
        limiter = RateLimiter(
            {"svc:op": RateLimitDefinition(limit=1, window_seconds=60)}, clock=self.clock
        )
        limiter.check_limit("svc", "op")
        self.assertFalse(limiter.check_limit("svc", "op"))

        limiter.reset("svc", "op")

        self.assertTrue(limiter.check_limit("svc", "op"))

    def test_require_raises_when_exhausted(self):
        limiter = RateLimiter(
            {"svc:op": RateLimitDefinition(limit=1, window_seconds=60)}, clock=self.clock
        )
        limiter.require("svc", "op")

        with self.assertRaises(RateLimitExceededError) as ctx:
            limiter.require("svc", "op")
        self.assertEqual(ctx.exception.integration, "svc")


class RetryWithBackoffTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(clock=self.clock, sleep=self.clock.sleep)

    def test_rate_limit_errors_are_retried_with_growing_delays(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 4:
                raise RuntimeError("429 Too Many Requests")
            return "ok"

        result = asyncio.run(self.limiter.retry_with_backoff(flaky))

        self.assertEqual(result, "ok")
        self.assertEqual(len(attempts), 4)
        self.assertEqual(self.clock.sleeps, [1.0, 2.0, 4.0])

    def test_other_errors_propagate_immediately(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValueError("bad input")

        with self.assertRaises(ValueError):
            asyncio.run(self.limiter.retry_with_backoff(broken))
        self.assertEqual(len(attempts), 1)
        self.assertEqual(self.clock.sleeps, [])

    def test_max_retries_counts_every_attempt(self):
        calls = []

        async def always_limited():
            calls.append(1)
            raise RateLimitExceededError("gmail", "send")

        with self.assertRaises(RateLimitExceededError):
            asyncio.run(self.limiter.retry_with_backoff(always_limited, max_retries=2))
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.clock.sleeps, [1.0])

    def test_default_budget_is_five_attempts_with_four_waits(self):
        calls = []

        async def always_limited():
            calls.append(1)
            raise RuntimeError("429 Too Many Requests")

        with self.assertRaises(RuntimeError):
            asyncio.run(self.limiter.retry_with_backoff(always_limited))
        self.assertEqual(len(calls), 5)
        self.assertEqual(self.clock.sleeps, [1.0, 2.0, 4.0, 8.0])

    def test_backoff_is_capped(self):
        self.assertEqual(backoff_delay(0), 1.0)
        self.assertEqual(backoff_delay(4), 16.0)
        self.assertEqual(backoff_delay(5), 30.0)
        self.assertEqual(backoff_delay(10), 30.0)

    def test_rate_limit_detection(self):
        self.assertTrue(is_rate_limit_error(RuntimeError("Rate limit reached")))
        self.assertTrue(is_rate_limit_error(RuntimeError("too many requests")))
        self.assertTrue(is_rate_limit_error(RateLimitExceededError("a", "b")))
        self.assertFalse(is_rate_limit_error(RuntimeError("connection reset")))


if __name__ == "__main__":
    unittest.main()
