"""
Sliding-window rate limiting.

Each key keeps an ordered log of accepted hit timestamps (milliseconds).
Every check prunes entries at or before ``now - window_ms`` so the reset
time moves continuously instead of jumping at bucket boundaries.
"""

import re
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import redis.asyncio as redis
from loguru import logger

from request_defense.models.security import RateLimitResult
from request_defense.services.state_store import InMemoryStateStore


@dataclass
class RateLimitConfig:
    """Rate limit configuration for a named scope."""
    max_requests: int
    window_ms: int


DEFAULT_SCOPES: Dict[str, RateLimitConfig] = {
    "api": RateLimitConfig(max_requests=100, window_ms=15 * 60 * 1000),
    "auth": RateLimitConfig(max_requests=5, window_ms=15 * 60 * 1000),
    "admin": RateLimitConfig(max_requests=200, window_ms=15 * 60 * 1000),
    "public": RateLimitConfig(max_requests=200, window_ms=15 * 60 * 1000),
    "search": RateLimitConfig(max_requests=30, window_ms=60 * 1000),
}

# First match wins; anything unmatched falls back to "public"
DEFAULT_SCOPE_ROUTES: List[Tuple[str, str]] = [
    (r"^/api/(v\d+/)?auth(/|$)", "auth"),
    (r"^/(api/(v\d+/)?)?(admin|security)(/|$)", "admin"),
    (r"^/(api/(v\d+/)?)?search(/|$)", "search"),
    (r"^/api(/|$)", "api"),
]


def _retry_after_seconds(reset_time: int, now_ms: int) -> int:
    return max(1, -(-(reset_time - now_ms) // 1000))


class SlidingWindowRateLimiter:
    """In-process sliding-log limiter with per-key locking."""

    def __init__(
        self,
        store: Optional[InMemoryStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.store = store or InMemoryStateStore(deque, clock=clock, name="rate_limit")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """Consume one slot for ``key`` if the window has room."""
        async with self.store.locked(key) as slot:
            hits: Deque[int] = slot.value
            now = self._now_ms()
            window_start = now - window_ms

            while hits and hits[0] <= window_start:
                hits.popleft()

            total_hits = len(hits)
            allowed = total_hits < max_requests
            if allowed:
                hits.append(now)
                total_hits += 1

            reset_time = (hits[0] if hits else now) + window_ms

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - total_hits),
            reset_time=reset_time,
            total_hits=total_hits,
            limit=max_requests,
            retry_after=None if allowed else _retry_after_seconds(reset_time, now),
        )

    async def get_status(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """Window state for ``key`` without consuming a slot."""
        now = self._now_ms()
        hits = self.store.peek(key) or ()
        live = [ts for ts in hits if ts > now - window_ms]
        reset_time = (live[0] if live else now) + window_ms
        return RateLimitResult(
            allowed=len(live) < max_requests,
            remaining=max(0, max_requests - len(live)),
            reset_time=reset_time,
            total_hits=len(live),
            limit=max_requests,
        )

    async def reset(self, key: str) -> None:
        self.store.reset(key)

    def evict_idle(self, max_idle_seconds: float) -> int:
        return self.store.evict_idle(max_idle_seconds)


class RedisSlidingWindowRateLimiter:
    """Redis sorted-set limiter shared across server instances.

    The prune/count/append sequence runs as one Lua script so concurrent
    checks on the same key are serialized by Redis.
    """

    SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local max_requests = tonumber(ARGV[3])
    local member = ARGV[4]

    redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
    local total = redis.call('ZCARD', key)
    local allowed = 0
    if total < max_requests then
        redis.call('ZADD', key, now, member)
        total = total + 1
        allowed = 1
    end
    redis.call('PEXPIRE', key, window)

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local reset_time = now + window
    if oldest[2] then
        reset_time = tonumber(oldest[2]) + window
    end
    return {allowed, total, reset_time}
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "rate_limit",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.prefix = prefix
        self._clock = clock
        self._script = self.redis.register_script(self.SLIDING_WINDOW_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def check_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = int(self._clock() * 1000)
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        allowed, total_hits, reset_time = await self._script(
            keys=[self._key(key)], args=[now, window_ms, max_requests, member]
        )
        allowed = bool(int(allowed))
        total_hits = int(total_hits)
        reset_time = int(reset_time)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - total_hits),
            reset_time=reset_time,
            total_hits=total_hits,
            limit=max_requests,
            retry_after=None if allowed else _retry_after_seconds(reset_time, now),
        )

    async def get_status(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now = int(self._clock() * 1000)
        redis_key = self._key(key)
        pipeline = self.redis.pipeline()
        pipeline.zcount(redis_key, f"({now - window_ms}", "+inf")
        pipeline.zrangebyscore(redis_key, f"({now - window_ms}", "+inf", start=0, num=1, withscores=True)
        total_hits, oldest = await pipeline.execute()
        reset_time = (int(oldest[0][1]) if oldest else now) + window_ms
        return RateLimitResult(
            allowed=total_hits < max_requests,
            remaining=max(0, max_requests - total_hits),
            reset_time=reset_time,
            total_hits=int(total_hits),
            limit=max_requests,
        )

    async def reset(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    def evict_idle(self, max_idle_seconds: float) -> int:
        # Keys expire in Redis on their own
        return 0


class RateLimiterRegistry:
    """Named limiter scopes, each with its own isolated limiter state."""

    def __init__(
        self,
        scopes: Optional[Dict[str, RateLimitConfig]] = None,
        limiter_factory: Optional[Callable[[str], Any]] = None,
        routes: Optional[List[Tuple[str, str]]] = None,
        default_scope: str = "public",
    ):
        self.scopes = dict(scopes or DEFAULT_SCOPES)
        factory = limiter_factory or (lambda scope: SlidingWindowRateLimiter())
        self.limiters = {scope: factory(scope) for scope in self.scopes}
        self._routes = [(re.compile(p), scope) for p, scope in (routes or DEFAULT_SCOPE_ROUTES)]
        self.default_scope = default_scope

    @classmethod
    def from_settings(cls, settings, redis_client: Optional[redis.Redis] = None, clock=time.time):
        scopes = {
            name: RateLimitConfig(**values)
            for name, values in settings.rate_limit_scopes.items()
        }
        if redis_client is not None:
            factory = lambda scope: RedisSlidingWindowRateLimiter(
                redis_client, prefix=f"rate_limit:{scope}", clock=clock
            )
        else:
            logger.warning("Using in-memory rate limiter. Use Redis for multi-instance deployments.")
            factory = lambda scope: SlidingWindowRateLimiter(clock=clock)
        return cls(scopes=scopes, limiter_factory=factory)

    def scope_for_path(self, path: str) -> str:
        for pattern, scope in self._routes:
            if pattern.match(path) and scope in self.scopes:
                return scope
        return self.default_scope

    def _get(self, scope: str):
        if scope not in self.scopes:
            raise KeyError(f"Unknown rate limit scope: {scope}")
        return self.limiters[scope], self.scopes[scope]

    async def check(self, scope: str, identifier: str) -> RateLimitResult:
        limiter, config = self._get(scope)
        return await limiter.check_limit(identifier, config.max_requests, config.window_ms)

    async def status(self, scope: str, identifier: str) -> RateLimitResult:
        limiter, config = self._get(scope)
        return await limiter.get_status(identifier, config.max_requests, config.window_ms)

    async def reset(self, scope: str, identifier: str) -> None:
        limiter, _ = self._get(scope)
        await limiter.reset(identifier)
        logger.info(f"Reset rate limit for {scope}:{identifier}")

    def evict_idle(self, max_idle_seconds: float) -> int:
        return sum(limiter.evict_idle(max_idle_seconds) for limiter in self.limiters.values())
