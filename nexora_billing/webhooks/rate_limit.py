"""Sliding window rate limiting for the inbound webhook endpoint.

Runs before signature verification so floods are rejected without paying
for HMAC work. Two stores share one interface: a process-local TTLCache
(single instance only) and a Redis sorted-set window shared by every
instance.
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from threading import Lock

import structlog
from cachetools import TTLCache
from redis.asyncio import Redis
from starlette.requests import Request

from nexora_billing.core.exceptions import RateLimitedError

logger = structlog.get_logger(__name__)

_CACHE_SIZE = 10_000


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until a slot frees up; 0 when allowed

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


class RateLimitStore(ABC):
    @abstractmethod
    async def hit(self, key: str, now: float, max_requests: int, window_seconds: int) -> RateLimitDecision:
        """Count one request for key and decide whether it is allowed."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local sliding window. Not shared across instances."""

    def __init__(self, window_seconds: int = 60, maxsize: int = _CACHE_SIZE):
        self._cache: TTLCache[str, deque[float]] = TTLCache(maxsize=maxsize, ttl=window_seconds)
        self._lock = Lock()

    async def hit(self, key: str, now: float, max_requests: int, window_seconds: int) -> RateLimitDecision:
        return self.hit_sync(key, now, max_requests, window_seconds)

    def hit_sync(self, key: str, now: float, max_requests: int, window_seconds: int) -> RateLimitDecision:
        with self._lock:
            window = self._cache.get(key)
            if window is None:
                window = deque()

            cutoff = now - window_seconds
            while window and window[0] <= cutoff:
                window.popleft()

            if len(window) >= max_requests:
                retry_after = max(1, int(window[0] + window_seconds - now))
                self._cache[key] = window
                return RateLimitDecision(False, max_requests, 0, retry_after)

            window.append(now)
            self._cache[key] = window
            return RateLimitDecision(True, max_requests, max(0, max_requests - len(window)), 0)


class RedisRateLimitStore(RateLimitStore):
    """Sorted-set sliding window executed in a single MULTI/EXEC.

    Any Redis error degrades to the in-memory store rather than blocking
    webhook traffic.
    """

    def __init__(self, redis: Redis, fallback: InMemoryRateLimitStore | None = None):
        self.redis = redis
        self.fallback = fallback or InMemoryRateLimitStore()

    async def hit(self, key: str, now: float, max_requests: int, window_seconds: int) -> RateLimitDecision:
        redis_key = f"rate_limit:{key}"
        member = f"{now}:{uuid.uuid4().hex}"

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
                pipe.zadd(redis_key, {member: now})
                pipe.zcard(redis_key)
                pipe.zrange(redis_key, 0, 0, withscores=True)
                pipe.expire(redis_key, window_seconds)
                results = await pipe.execute()
        except Exception as exc:
            logger.warning("rate_limit_redis_error_fallback", error_type=exc.__class__.__name__, error=str(exc))
            return await self.fallback.hit(key, now, max_requests, window_seconds)

        count = results[2]
        if count > max_requests:
            # Denied requests do not consume a slot
            try:
                await self.redis.zrem(redis_key, member)
            except Exception as exc:
                logger.warning("rate_limit_redis_cleanup_failed", error=str(exc))
            oldest = results[3][0][1] if results[3] else now
            retry_after = max(1, int(oldest + window_seconds - now))
            return RateLimitDecision(False, max_requests, 0, retry_after)

        return RateLimitDecision(True, max_requests, max(0, max_requests - count), 0)


class RateLimiter:
    """Per-source quota: at most max_requests per sliding window_seconds."""

    def __init__(self, store: RateLimitStore, max_requests: int = 100, window_seconds: int = 60):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    async def check(self, identifier: str, now: float | None = None) -> RateLimitDecision:
        now = time.time() if now is None else now
        decision = await self.store.hit(f"webhook:{identifier}", now, self.max_requests, self.window_seconds)
        if not decision.allowed:
            logger.warning(
                "webhook_rate_limited",
                identifier=identifier,
                limit=self.max_requests,
                window_seconds=self.window_seconds,
                retry_after=decision.retry_after,
            )
        return decision

    async def enforce(self, identifier: str, now: float | None = None) -> RateLimitDecision:
        """Like check(), but raises RateLimitedError when denied."""
        decision = await self.check(identifier, now)
        if not decision.allowed:
            raise RateLimitedError(identifier, decision.retry_after, decision.limit)
        return decision
