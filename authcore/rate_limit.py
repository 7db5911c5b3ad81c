"""Sliding-window request throttling per caller and operation class."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis
from fastapi import Request, Response, status
from redis.exceptions import RedisError

from .config import RateLimitPolicy, Settings
from .errors import APIError, ErrorCode
from .utils.network import get_client_ip

logger = logging.getLogger("authcore.rate_limit")

# Retry hint handed out when the counter store is unreachable and the
# limiter is configured to fail closed.
_UNAVAILABLE_RETRY_AFTER = 30


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class SlidingWindowStore(Protocol):
    async def hit(
        self, key: str, *, limit: int, period: int, now: float
    ) -> tuple[bool, int, float]:
        """Record one request unless the window is full.

        Returns ``(allowed, remaining, reset_after)`` where ``reset_after`` is
        the number of seconds until the oldest counted request leaves the
        window.
        """
        ...


class MemorySlidingWindowStore:
    """Per-process request log; suitable for a single worker or tests.

    Empty logs are dropped as soon as they are seen, and every
    ``sweep_interval`` seconds logs whose newest hit has left its window are
    dropped too, so callers that never come back do not pile up.
    """

    def __init__(self, sweep_interval: float = 60.0) -> None:
        self.history: dict[str, deque[float]] = {}
        # When each log's newest entry leaves its window.
        self.stale_at: dict[str, float] = {}
        self.sweep_interval = sweep_interval
        self._next_sweep: float | None = None
        self.lock = asyncio.Lock()

    def _forget(self, key: str) -> None:
        self.history.pop(key, None)
        self.stale_at.pop(key, None)

    def _sweep(self, now: float) -> None:
        for key in [key for key, stale_at in self.stale_at.items() if stale_at <= now]:
            self._forget(key)
        self._next_sweep = now + self.sweep_interval

    async def hit(
        self, key: str, *, limit: int, period: int, now: float
    ) -> tuple[bool, int, float]:
        cutoff = now - period
        async with self.lock:
            if self._next_sweep is None or now >= self._next_sweep:
                self._sweep(now)
            q = self.history.get(key)
            if q is not None:
                while q and q[0] <= cutoff:
                    q.popleft()
                if not q:
                    self._forget(key)
                    q = None
            if q is not None and len(q) >= limit:
                return False, 0, period - (now - q[0])
            if q is None:
                q = self.history[key] = deque()
            q.append(now)
            self.stale_at[key] = now + period
            remaining = limit - len(q)
            reset_after = period - (now - q[0])
        return True, remaining, reset_after

    async def aclose(self) -> None:
        self.history.clear()
        self.stale_at.clear()


class RedisSlidingWindowStore:
    """Sorted-set request log shared by every worker."""

    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local period = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - period)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset_after = period
  if oldest[2] then
    reset_after = tonumber(oldest[2]) + period - now
  end
  return {0, 0, tostring(reset_after)}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.ceil(period * 1000))
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, limit - count - 1, tostring(tonumber(oldest[2]) + period - now)}
"""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        socket_timeout: float = 0.5,
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _key(key: str) -> str:
        # Hash the caller component so arbitrary identifiers cannot collide.
        op_class, _, caller = key.partition(":")
        digest = hashlib.sha256(caller.encode()).hexdigest()
        return f"ratelimit:{op_class}:{digest}"

    async def hit(
        self, key: str, *, limit: int, period: int, now: float
    ) -> tuple[bool, int, float]:
        allowed, remaining, reset_after = await self._sliding_window(
            keys=[self._key(key)],
            args=[now, period, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        return bool(int(allowed)), max(0, int(remaining)), float(reset_after)

    async def aclose(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """Apply per-class policies on top of a counter store.

    When the store is missing, raises or does not answer within ``timeout``
    seconds the request is allowed (``fail_open``) or denied, and a warning is
    logged either way.
    """

    def __init__(
        self,
        store: SlidingWindowStore | None,
        policies: dict[str, RateLimitPolicy],
        *,
        fail_open: bool = True,
        timeout: float = 0.5,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policies = policies
        self.fail_open = fail_open
        self.timeout = timeout
        self.enabled = enabled
        self._clock = clock

    def policy(self, op_class: str) -> RateLimitPolicy:
        try:
            return self.policies[op_class]
        except KeyError:
            raise ValueError(f"Unknown rate limit class: {op_class}") from None

    def _degraded(self, policy: RateLimitPolicy, now: float, op_class: str, reason: str) -> RateLimitResult:
        logger.warning(
            "Rate limiter store unavailable; %s request",
            "allowing" if self.fail_open else "denying",
            extra={
                "event_dataset": "authcore.rate_limit",
                "event_action": "rate_limit_degraded",
                "rate_limit_class": op_class,
                "error_type": reason,
            },
        )
        if self.fail_open:
            return RateLimitResult(True, policy.limit, policy.limit, now + policy.period)
        retry_after = min(policy.period, _UNAVAILABLE_RETRY_AFTER)
        return RateLimitResult(False, policy.limit, 0, now + retry_after, retry_after)

    async def check(self, caller_id: str, op_class: str) -> RateLimitResult:
        policy = self.policy(op_class)
        now = self._clock()
        if not self.enabled:
            return RateLimitResult(True, policy.limit, policy.limit, now + policy.period)
        if self.store is None:
            return self._degraded(policy, now, op_class, "no_store")

        try:
            allowed, remaining, reset_after = await asyncio.wait_for(
                self.store.hit(
                    f"{op_class}:{caller_id}",
                    limit=policy.limit,
                    period=policy.period,
                    now=now,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self._degraded(policy, now, op_class, "timeout")
        except (RedisError, OSError) as exc:
            return self._degraded(policy, now, op_class, type(exc).__name__)

        reset_after = max(0.0, reset_after)
        if allowed:
            return RateLimitResult(True, policy.limit, remaining, now + reset_after)

        retry_after = max(1, int(math.ceil(reset_after)))
        logger.info(
            "Rate limit exceeded",
            extra={
                "event_dataset": "authcore.rate_limit",
                "event_action": "rate_limited",
                "rate_limit_class": op_class,
            },
        )
        return RateLimitResult(False, policy.limit, 0, now + reset_after, retry_after)

    async def aclose(self) -> None:
        closer = getattr(self.store, "aclose", None)
        if closer is not None:
            await closer()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    store: SlidingWindowStore | None
    if settings.rate_limit_backend == "redis":
        store = RedisSlidingWindowStore(
            settings.redis_url,
            socket_timeout=settings.rate_limit_timeout,
        )
    elif settings.rate_limit_backend == "memory":
        store = MemorySlidingWindowStore()
    else:
        store = None
    return RateLimiter(
        store,
        settings.rate_limits,
        fail_open=settings.rate_limit_fail_open,
        timeout=settings.rate_limit_timeout,
        enabled=settings.rate_limit_backend != "disabled",
    )


def rate_limited(op_class: str) -> Callable[[Request, Response], Awaitable[RateLimitResult]]:
    """Dependency throttling the endpoint by client IP under ``op_class``."""

    async def _enforce(request: Request, response: Response) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.rate_limiter
        result = await limiter.check(get_client_ip(request), op_class)
        request.state.rate_limit = result
        request.state.rate_limit_class = op_class
        if not result.allowed:
            raise APIError(
                status.HTTP_429_TOO_MANY_REQUESTS,
                ErrorCode.RATE_LIMITED,
                "Too many requests. Please try again later.",
                headers=result.headers(),
            )
        response.headers.update(result.headers())
        return result

    return _enforce
