from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Protocol

import redis

from app.core.config import settings

_LOG = logging.getLogger("app.rate_limit")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    current_value: int


class RateLimiter(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        ...

    def purge_expired(self) -> int:
        ...


class InMemoryRateLimiter:
    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self._data: dict[str, tuple[int, datetime]] = {}
        self._lock = Lock()
        self._clock = clock

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            count, expires_at = self._data.get(key, (0, now))
            if expires_at <= now:
                count = 0
                expires_at = now + timedelta(seconds=max(int(window_seconds), 1))
            count += 1
            self._data[key] = (count, expires_at)
            retry_after = max(0, int((expires_at - now).total_seconds()))
        return RateLimitResult(allowed=count <= limit, retry_after_seconds=retry_after, current_value=count)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
            for key in stale:
                self._data.pop(key, None)
        return len(stale)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._data)


class RedisRateLimiter:
    """INCR+EXPIRE windows; counts locally while Redis is unreachable."""

    def __init__(self, client: redis.Redis, fallback: InMemoryRateLimiter | None = None):
        self.client = client
        self.fallback = fallback or InMemoryRateLimiter()

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        try:
            return self._hit_redis(key, limit=limit, window_seconds=window_seconds)
        except redis.RedisError:
            _LOG.warning("Redis limiter call failed; counting in memory key=%s", key)
            return self.fallback.hit(key, limit=limit, window_seconds=window_seconds)

    def _hit_redis(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        count = int(self.client.incr(key))
        if count == 1:
            self.client.expire(key, int(max(window_seconds, 1)))
        ttl = int(self.client.ttl(key))
        if ttl < 0:
            ttl = int(max(window_seconds, 1))
        return RateLimitResult(allowed=count <= limit, retry_after_seconds=ttl, current_value=count)

    def purge_expired(self) -> int:
        # Redis keys carry their own TTL; only the fallback needs sweeping.
        return self.fallback.purge_expired()


class MessageRateLimiter:
    """Fixed-window message budget per user (default 30 messages per 60 s)."""

    KEY_PREFIX = "chat:rate:user:"

    def __init__(
        self,
        backend: RateLimiter,
        *,
        limit: int | None = None,
        window_seconds: int | None = None,
    ):
        self.backend = backend
        self.limit = int(limit if limit is not None else settings.CHAT_RATE_LIMIT_MAX_MESSAGES)
        self.window_seconds = int(window_seconds if window_seconds is not None else settings.CHAT_RATE_LIMIT_WINDOW_SECONDS)

    def check(self, user_id) -> RateLimitResult:
        result = self.backend.hit(
            f"{self.KEY_PREFIX}{user_id}",
            limit=self.limit,
            window_seconds=self.window_seconds,
        )
        if not result.allowed:
            _LOG.info("message rate limit hit user=%s count=%s", user_id, result.current_value)
        return result

    def allow(self, user_id) -> bool:
        return self.check(user_id).allowed

    def purge_expired(self) -> int:
        return self.backend.purge_expired()


_cached_limiter: RateLimiter | None = None


def _build_limiter() -> RateLimiter:
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=0.4,
            socket_connect_timeout=0.4,
        )
        client.ping()
        return RedisRateLimiter(client)
    except Exception:
        _LOG.warning("Redis limiter unavailable; fallback to in-memory limiter")
        return InMemoryRateLimiter()


def get_rate_limiter() -> RateLimiter:
    global _cached_limiter
    if _cached_limiter is None:
        _cached_limiter = _build_limiter()
    return _cached_limiter


def reset_rate_limiter_for_tests() -> None:
    global _cached_limiter
    _cached_limiter = None
