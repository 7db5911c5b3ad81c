import asyncio

import httpx
import pytest
from httpx import ASGITransport
from redis.exceptions import ConnectionError as RedisConnectionError

from authcore.config import RateLimitPolicy
from authcore.rate_limit import (
    MemorySlidingWindowStore,
    RateLimiter,
    RedisSlidingWindowStore,
)

from .conftest import RecordingMailer, build_app, make_settings

POLICIES = {"auth": RateLimitPolicy(5, 900), "api": RateLimitPolicy(10, 10)}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class BrokenStore:
    async def hit(self, key, *, limit, period, now):
        raise RedisConnectionError("redis is down")


class SlowStore:
    async def hit(self, key, *, limit, period, now):
        await asyncio.sleep(1)
        return True, limit - 1, period


class FakeScript:
    """Stand-in for a registered Lua script backed by a memory store."""

    def __init__(self) -> None:
        self.store = MemorySlidingWindowStore()
        self.calls: list[list[str]] = []

    async def __call__(self, keys, args):
        self.calls.append(keys)
        now, period, limit, _member = args
        allowed, remaining, reset_after = await self.store.hit(
            keys[0], limit=int(limit), period=int(period), now=float(now)
        )
        return [1 if allowed else 0, remaining, str(reset_after)]


class FakeRedis:
    def __init__(self) -> None:
        self.script = FakeScript()
        self.closed = False

    def register_script(self, source):
        assert "ZREMRANGEBYSCORE" in source
        return self.script

    async def aclose(self):
        self.closed = True


async def test_sixth_auth_request_in_window_is_denied():
    clock = FakeClock()
    limiter = RateLimiter(MemorySlidingWindowStore(), POLICIES, clock=clock)

    results = [await limiter.check("1.1.1.1", "auth") for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
    denied = results[-1]
    assert denied.retry_after == 900
    assert denied.headers()["Retry-After"] == "900"
    assert denied.headers()["X-RateLimit-Limit"] == "5"


async def test_window_slides_and_callers_are_isolated():
    clock = FakeClock()
    limiter = RateLimiter(MemorySlidingWindowStore(), POLICIES, clock=clock)

    for _ in range(5):
        assert (await limiter.check("1.1.1.1", "auth")).allowed
    assert not (await limiter.check("1.1.1.1", "auth")).allowed
    assert (await limiter.check("2.2.2.2", "auth")).allowed
    assert (await limiter.check("1.1.1.1", "api")).allowed

    clock.now += 901
    assert (await limiter.check("1.1.1.1", "auth")).allowed


async def test_memory_store_forgets_callers_once_their_window_passes():
    clock = FakeClock()
    store = MemorySlidingWindowStore()
    limiter = RateLimiter(store, POLICIES, clock=clock)

    for i in range(1000):
        assert (await limiter.check(f"10.0.{i // 256}.{i % 256}", "auth")).allowed
    assert len(store.history) == 1000

    clock.now += 10_000
    assert (await limiter.check("192.0.2.1", "auth")).allowed

    assert len(store.history) == 1
    assert len(store.stale_at) == 1


async def test_memory_store_drops_an_emptied_log_before_reusing_it():
    store = MemorySlidingWindowStore(sweep_interval=1_000_000)

    await store.hit("k", limit=2, period=10, now=0.0)
    await store.hit("k", limit=2, period=10, now=1.0)
    allowed, remaining, _ = await store.hit("k", limit=2, period=10, now=20.0)

    assert allowed
    assert remaining == 1
    assert list(store.history["k"]) == [20.0]


async def test_unknown_class_is_rejected():
    limiter = RateLimiter(MemorySlidingWindowStore(), POLICIES)
    with pytest.raises(ValueError):
        await limiter.check("1.1.1.1", "bogus")


async def test_store_failure_fails_open_with_warning(caplog):
    limiter = RateLimiter(BrokenStore(), POLICIES, fail_open=True)

    with caplog.at_level("WARNING", logger="authcore.rate_limit"):
        result = await limiter.check("1.1.1.1", "auth")

    assert result.allowed
    assert any(r.event_action == "rate_limit_degraded" for r in caplog.records)


async def test_store_failure_fails_closed_when_configured():
    limiter = RateLimiter(BrokenStore(), POLICIES, fail_open=False)

    result = await limiter.check("1.1.1.1", "auth")

    assert not result.allowed
    assert result.retry_after == 30


async def test_slow_store_times_out():
    limiter = RateLimiter(SlowStore(), POLICIES, fail_open=False, timeout=0.01)

    result = await limiter.check("1.1.1.1", "auth")

    assert not result.allowed


async def test_missing_store_follows_fail_mode():
    assert (await RateLimiter(None, POLICIES).check("1.1.1.1", "auth")).allowed
    assert not (await RateLimiter(None, POLICIES, fail_open=False).check("1.1.1.1", "auth")).allowed


async def test_disabled_limiter_always_allows():
    limiter = RateLimiter(MemorySlidingWindowStore(), POLICIES, enabled=False)
    results = [await limiter.check("1.1.1.1", "auth") for _ in range(10)]
    assert all(r.allowed for r in results)


async def test_redis_store_hashes_caller_into_key():
    fake = FakeRedis()
    store = RedisSlidingWindowStore(client=fake)
    limiter = RateLimiter(store, POLICIES, clock=FakeClock())

    results = [await limiter.check("203.0.113.9", "auth") for _ in range(6)]

    assert [r.allowed for r in results] == [True] * 5 + [False]
    key = fake.script.calls[0][0]
    assert key.startswith("ratelimit:auth:")
    assert "203.0.113.9" not in key
    await limiter.aclose()
    assert fake.closed


async def test_endpoint_returns_429_with_headers():
    settings = make_settings(rate_limits={"auth": RateLimitPolicy(5, 900), "api": RateLimitPolicy(10, 10)})
    app = build_app(settings, RecordingMailer())

    headers = {"X-Forwarded-For": "198.51.100.7"}
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        responses = [
            await client.post("/auth/forgot-password", json={"email": "a@example.com"}, headers=headers)
            for _ in range(6)
        ]
        other = await client.post(
            "/auth/forgot-password",
            json={"email": "a@example.com"},
            headers={"X-Forwarded-For": "198.51.100.8"},
        )

    assert [r.status_code for r in responses] == [202] * 5 + [429]
    assert responses[0].headers["X-RateLimit-Remaining"] == "4"
    denied = responses[-1]
    assert denied.json()["error"]["code"] == "rate_limited"
    assert int(denied.headers["Retry-After"]) > 0
    assert denied.headers["X-RateLimit-Remaining"] == "0"
    assert other.status_code == 202
    app.state.engine.dispose()
