"""OAuth state token registry tests"""
import asyncio
import json

import fakeredis.aioredis
import pytest

from socialbridge.services.state_registry import (
    InMemoryStateRegistry, RedisStateRegistry, StateEntry, build_state_registry, run_eviction_sweep
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.mark.critical
class TestInMemoryStateRegistry:
    """Single-use, TTL-bound state tokens"""

    @pytest.mark.asyncio
    async def test_state_verifies_exactly_once(self):
        registry = InMemoryStateRegistry(ttl_seconds=3600)
        state = await registry.issue(42, "facebook")

        entry = await registry.verify_and_consume(state)
        assert entry == StateEntry(user_id=42, provider="facebook", created_at=entry.created_at)
        assert await registry.verify_and_consume(state) is None

    @pytest.mark.asyncio
    async def test_tokens_are_unique_and_long(self):
        registry = InMemoryStateRegistry()
        tokens = {await registry.issue(1) for _ in range(50)}
        assert len(tokens) == 50
        # token_urlsafe(32) yields 43 characters
        assert all(len(token) >= 43 for token in tokens)

    @pytest.mark.asyncio
    async def test_unknown_and_empty_state_not_found(self):
        registry = InMemoryStateRegistry()
        assert await registry.verify_and_consume("never-issued") is None
        assert await registry.verify_and_consume("") is None

    @pytest.mark.asyncio
    async def test_expired_state_not_found_even_if_never_consumed(self):
        clock = FakeClock()
        registry = InMemoryStateRegistry(ttl_seconds=3600, clock=clock)
        state = await registry.issue(7, "gmail")

        clock.advance(3600)
        assert await registry.verify_and_consume(state) is None
        # Consumption attempt removed it as well
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_state_valid_just_before_ttl(self):
        clock = FakeClock()
        registry = InMemoryStateRegistry(ttl_seconds=3600, clock=clock)
        state = await registry.issue(7, "gmail")

        clock.advance(3599)
        entry = await registry.verify_and_consume(state)
        assert entry is not None
        assert entry.user_id == 7

    @pytest.mark.asyncio
    async def test_concurrent_consumers_only_one_wins(self):
        registry = InMemoryStateRegistry()
        state = await registry.issue(5, "tiktok")

        results = await asyncio.gather(*(registry.verify_and_consume(state) for _ in range(10)))
        assert sum(1 for result in results if result is not None) == 1


@pytest.mark.high
class TestEviction:
    """Expiry sweep"""

    @pytest.mark.asyncio
    async def test_evict_removes_only_expired(self):
        clock = FakeClock()
        registry = InMemoryStateRegistry(ttl_seconds=60, clock=clock)
        old = await registry.issue(1)
        clock.advance(61)
        fresh = await registry.issue(2)

        assert await registry.evict_expired() == 1
        assert len(registry) == 1
        assert await registry.verify_and_consume(old) is None
        assert (await registry.verify_and_consume(fresh)).user_id == 2

    @pytest.mark.asyncio
    async def test_evict_after_consume_is_noop(self):
        clock = FakeClock()
        registry = InMemoryStateRegistry(ttl_seconds=60, clock=clock)
        state = await registry.issue(1)
        await registry.verify_and_consume(state)
        clock.advance(120)

        assert await registry.evict_expired() == 0

    @pytest.mark.asyncio
    async def test_run_eviction_sweep_returns_count(self):
        clock = FakeClock()
        registry = InMemoryStateRegistry(ttl_seconds=10, clock=clock)
        await registry.issue(1)
        await registry.issue(2)
        clock.advance(11)

        assert await run_eviction_sweep(registry) == 2
        assert await run_eviction_sweep(registry) == 0


@pytest.mark.high
class TestRedisStateRegistry:
    """Shared registry backed by Redis"""

    @pytest.fixture
    def fake_async_redis(self):
        return fakeredis.aioredis.FakeRedis(decode_responses=True)

    @pytest.mark.asyncio
    async def test_issue_sets_ttl_and_consume_deletes(self, fake_async_redis):
        registry = RedisStateRegistry(client_factory=lambda: fake_async_redis, ttl_seconds=3600)
        state = await registry.issue(9, "whatsapp")

        key = registry._key(state)
        assert 0 < await fake_async_redis.ttl(key) <= 3600
        stored = json.loads(await fake_async_redis.get(key))
        assert stored["user_id"] == 9

        entry = await registry.verify_and_consume(state)
        assert entry.user_id == 9
        assert entry.provider == "whatsapp"
        assert await fake_async_redis.exists(key) == 0
        assert await registry.verify_and_consume(state) is None

    @pytest.mark.asyncio
    async def test_expired_by_clock_not_found(self, fake_async_redis):
        clock = FakeClock()
        registry = RedisStateRegistry(client_factory=lambda: fake_async_redis, ttl_seconds=60, clock=clock)
        state = await registry.issue(9)
        clock.advance(60)

        assert await registry.verify_and_consume(state) is None

    @pytest.mark.asyncio
    async def test_malformed_entry_not_found(self, fake_async_redis):
        registry = RedisStateRegistry(client_factory=lambda: fake_async_redis)
        await fake_async_redis.set(registry._key("bad"), "not json")

        assert await registry.verify_and_consume("bad") is None

    @pytest.mark.asyncio
    async def test_evict_is_noop(self, fake_async_redis):
        registry = RedisStateRegistry(client_factory=lambda: fake_async_redis)
        assert await registry.evict_expired() == 0


@pytest.mark.medium
def test_build_state_registry_selects_backend():
    assert isinstance(build_state_registry("memory"), InMemoryStateRegistry)
    assert isinstance(build_state_registry("redis"), RedisStateRegistry)
