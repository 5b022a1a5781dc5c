# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Fixed-window rate limiting backed by a TTL counter store.

The store is passed to the middleware explicitly, so each application (and
each test) owns its counters. The memory store suits a single process; the
Redis store shares limits across workers.

Configure via environment variables:
    SCIFLOW_RATE_LIMIT_BACKEND=memory|redis  (default: memory)
    SCIFLOW_REDIS_URL=redis://localhost:6379
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from ..core.exceptions import ConfigException
from .errors import rate_limited_error

try:
    import redis
except ImportError:  # pragma: no cover
    redis = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_REDIS_KEY_PREFIX = "sciflow:ratelimit:"


class CounterStore(ABC):
    """Counters that expire ``ttl_seconds`` after their first increment."""

    @abstractmethod
    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment ``key`` and return the new count."""
        ...

    @abstractmethod
    def reset(self, key: str) -> None: ...


class MemoryCounterStore(CounterStore):
    """In-process counters. Lost on restart, not shared between workers.

    Expired counters are dropped at most once per ``sweep_interval``
    seconds while counting, so one-off clients do not pile up.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, (_, exp) in self._counters.items() if now >= exp]
        for key in expired:
            del self._counters[key]
        return len(expired)

    def incr(self, key: str, ttl_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._drop_expired(now)
                self._next_sweep = now + self._sweep_interval
            count, expires_at = self._counters.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            return count

    def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    def cleanup_expired(self) -> int:
        with self._lock:
            return self._drop_expired(self._clock())

    def __len__(self) -> int:
        return len(self._counters)


class RedisCounterStore(CounterStore):
    """Redis-backed counters using INCR + EXPIRE.

    Requires redis-py: ``pip install sciflow[redis]``
    """

    def __init__(self, redis_url: str = "redis://localhost:6379") -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisCounterStore. Install with: pip install sciflow[redis]")
        self._client = redis.Redis.from_url(redis_url, decode_responses=True)
        try:
            self._client.ping()
        except redis.ConnectionError:
            logger.warning("Redis connection failed at init, will retry on use")

    def _key(self, key: str) -> str:
        return f"{_REDIS_KEY_PREFIX}{key}"

    def incr(self, key: str, ttl_seconds: int) -> int:
        name = self._key(key)
        pipe = self._client.pipeline()
        pipe.incr(name)
        pipe.expire(name, ttl_seconds, nx=True)
        count, _ = pipe.execute()
        return int(count)

    def reset(self, key: str) -> None:
        self._client.delete(self._key(key))


def create_counter_store(backend: str = "memory", redis_url: str | None = None) -> CounterStore:
    backend = backend.lower()
    if backend == "redis":
        logger.info("Using Redis rate-limit counters")
        return RedisCounterStore(redis_url or "redis://localhost:6379")
    if backend == "memory":
        return MemoryCounterStore()
    raise ConfigException(f"Unknown rate limit backend: {backend}")


class RateLimiter:
    """Allows ``limit`` hits per key per ``window_seconds``."""

    def __init__(self, store: CounterStore, limit: int, window_seconds: int = 60) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    def hit(self, key: str) -> bool:
        """Count one request; False once the key is over its limit."""
        if self.limit <= 0:
            return True
        return self.store.incr(key, self.window_seconds) <= self.limit


def client_key(request: Request) -> str:
    """Rate-limit key: a digest of the bearer credential if present, else the peer address."""
    authorization = request.headers.get("authorization")
    if authorization:
        return "token:" + hashlib.sha256(authorization.encode()).hexdigest()[:24]
    client = request.client
    return f"ip:{client.host if client else 'unknown'}"


class RateLimitMiddleware:
    """ASGI middleware returning 429 for clients over their limit.

    Only paths under ``prefix`` count; health checks and metrics do not.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        prefix: str = "/api/v1",
        exempt: tuple[str, ...] = ("/api/v1/health",),
    ) -> None:
        self.app = app
        self.limiter = limiter
        self.prefix = prefix
        self.exempt = exempt

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        path = scope["path"]
        if not path.startswith(self.prefix) or path in self.exempt:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        if not self.limiter.hit(client_key(request)):
            response = rate_limited_error()
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)
