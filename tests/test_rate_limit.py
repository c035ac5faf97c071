import os
import unittest
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import redis

from app.services.rate_limit import InMemoryRateLimiter, MessageRateLimiter, RedisRateLimiter


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class MessageRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.backend = InMemoryRateLimiter(clock=self.clock)
        self.limiter = MessageRateLimiter(self.backend, limit=30, window_seconds=60)

    def test_thirty_first_message_in_window_is_denied(self):
        allowed = [self.limiter.allow("user-1") for _ in range(30)]
        self.assertTrue(all(allowed))
        verdict = self.limiter.check("user-1")
        self.assertFalse(verdict.allowed)
        self.assertEqual(verdict.current_value, 31)
        self.assertGreater(verdict.retry_after_seconds, 0)

    def test_new_window_allows_again(self):
        for _ in range(31):
            self.limiter.allow("user-1")
        self.clock.advance(59)
        self.assertFalse(self.limiter.allow("user-1"))
        self.clock.advance(1)
        self.assertTrue(self.limiter.allow("user-1"))

    def test_counters_are_per_user(self):
        for _ in range(30):
            self.limiter.allow("user-1")
        self.assertFalse(self.limiter.allow("user-1"))
        self.assertTrue(self.limiter.allow("user-2"))

    def test_purge_drops_only_expired_windows(self):
        self.limiter.allow("user-1")
        self.clock.advance(30)
        self.limiter.allow("user-2")
        self.assertEqual(self.backend.tracked_keys(), 2)

        self.clock.advance(31)
        self.assertEqual(self.limiter.purge_expired(), 1)
        self.assertEqual(self.backend.tracked_keys(), 1)

        self.clock.advance(60)
        self.assertEqual(self.limiter.purge_expired(), 1)
        self.assertEqual(self.backend.tracked_keys(), 0)

    def test_defaults_come_from_settings(self):
        limiter = MessageRateLimiter(self.backend)
        self.assertEqual(limiter.limit, 30)
        self.assertEqual(limiter.window_seconds, 60)


if __name__ == "__main__":
    unittest.main()


class FlakyRedis:
    """Counts like Redis until ``down`` is set."""

    def __init__(self):
        self.down = False
        self.counts = {}

    def _check(self):
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def incr(self, key):
        self._check()
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def expire(self, key, seconds):
        self._check()
        return True

    def ttl(self, key):
        self._check()
        return 60


class RedisRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.client = FlakyRedis()
        self.clock = FakeClock()
        self.backend = RedisRateLimiter(self.client, fallback=InMemoryRateLimiter(clock=self.clock))
        self.limiter = MessageRateLimiter(self.backend, limit=30, window_seconds=60)

    def test_counts_in_redis_while_available(self):
        result = self.limiter.check("user-1")
        self.assertTrue(result.allowed)
        self.assertEqual(result.retry_after_seconds, 60)
        self.assertEqual(self.client.counts, {"chat:rate:user:user-1": 1})

    def test_redis_outage_falls_back_to_memory_window(self):
        self.client.down = True

        allowed = [self.limiter.allow("user-1") for _ in range(30)]
        self.assertTrue(all(allowed))
        self.assertFalse(self.limiter.allow("user-1"))
        self.assertEqual(self.client.counts, {})

        self.clock.advance(61)
        self.assertEqual(self.limiter.purge_expired(), 1)
