"""Fixed-window rate limiting keyed by client identifier.

Counters live in process memory by default; with `rate_limit_backend=redis`
they are shared through Redis so every worker sees the same window.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import math
import threading
import time

from fastapi import Request

from songmint.config import Settings
from songmint.db import get_redis
from songmint.exceptions import RateLimitExceeded


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


class MemoryWindowStore:

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        """Count one request; returns (count in window, window reset time)."""
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_seconds
                self._prune(now)
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]


class RedisWindowStore:

    def __init__(self, client):
        self._client = client

    def hit(self, key: str, window_seconds: int, now: float) -> Tuple[int, float]:
        count = self._client.incr(key)
        if count == 1:
            self._client.expire(key, window_seconds)
        ttl = self._client.ttl(key)
        if ttl is None or ttl < 0:
            # Key lost its expiry (e.g. crash between INCR and EXPIRE)
            self._client.expire(key, window_seconds)
            ttl = window_seconds
        return int(count), now + ttl


class RateLimiter:

    def __init__(self, max_requests: int, window_seconds: int, store=None, prefix: str = ""):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.store = store or MemoryWindowStore()
        self.prefix = prefix

    def check(self, identifier: str) -> RateLimitResult:
        now = time.time()
        count, reset_at = self.store.hit(f"{self.prefix}{identifier}", self.window_seconds, now)
        if count > self.max_requests:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitResult(allowed=True, remaining=self.max_requests - count, reset_at=reset_at)

    def enforce(self, identifier: str) -> RateLimitResult:
        result = self.check(identifier)
        if not result.allowed:
            raise RateLimitExceeded(self.max_requests, self.window_seconds, result.retry_after, identifier)
        return result


def build_webhook_limiter(settings: Settings) -> RateLimiter:
    store = RedisWindowStore(get_redis()) if settings.rate_limit_backend == "redis" else MemoryWindowStore()
    return RateLimiter(
        max_requests=settings.webhook_rate_limit,
        window_seconds=settings.webhook_rate_window_seconds,
        store=store,
        prefix="webhook:",
    )


def client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    if request.client:
        return request.client.host
    return "unknown"
