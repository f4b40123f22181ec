"""
Tests for Login Throttling
==========================

LoginRateLimiter policy over a dict-backed counter, plus the Redis
counter's command sequence.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ossmanager.api.access.ratelimit import LoginRateLimiter, RedisAttemptCounter
from ossmanager.api.exceptions import RateLimited


class DictCounter:
    """AttemptCounter without expiry; ttl is fixed."""

    def __init__(self, ttl: int = 600):
        self.counts = {}
        self.fixed_ttl = ttl

    async def hit(self, key, window):
        # Yield first so concurrent callers interleave around the increment
        await asyncio.sleep(0)
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def ttl(self, key):
        return self.fixed_ttl if key in self.counts else 0

    async def reset(self, key):
        self.counts.pop(key, None)


class UnreachableCounter:
    """Counter whose backing store is down."""

    async def hit(self, key, window):
        raise RedisConnectionError("down")

    async def ttl(self, key):
        raise RedisConnectionError("down")

    async def reset(self, key):
        raise RedisConnectionError("down")


@pytest.fixture
def counter():
    return DictCounter()


@pytest.fixture
def limiter(counter):
    return LoginRateLimiter(counter, max_attempts=5, window_seconds=900)


class TestLoginRateLimiter:
    """Tests for the login attempt policy."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter, counter):
        for _ in range(5):
            await limiter.acquire("alice", "10.0.0.1")

        assert counter.counts == {"user:alice": 5, "ip:10.0.0.1": 5}

    @pytest.mark.asyncio
    async def test_blocks_past_limit(self, limiter):
        for _ in range(5):
            await limiter.acquire("alice", "10.0.0.1")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire("alice", "10.0.0.2")

        assert exc_info.value.retry_after == 600

    @pytest.mark.asyncio
    async def test_concurrent_attempts_cannot_exceed_limit(self, limiter):
        results = await asyncio.gather(
            *(limiter.acquire("alice", "10.0.0.1") for _ in range(30)),
            return_exceptions=True,
        )

        admitted = [result for result in results if result is None]
        blocked = [result for result in results if isinstance(result, RateLimited)]
        assert len(admitted) == 5
        assert len(blocked) == 25

    @pytest.mark.asyncio
    async def test_username_key_is_case_insensitive(self, limiter):
        for _ in range(5):
            await limiter.acquire("Alice", None)

        with pytest.raises(RateLimited):
            await limiter.acquire("ALICE", None)

    @pytest.mark.asyncio
    async def test_ip_key_blocks_other_usernames(self, limiter):
        for index in range(5):
            await limiter.acquire(f"user{index}", "10.0.0.9")

        with pytest.raises(RateLimited):
            await limiter.acquire("fresh", "10.0.0.9")
        await limiter.acquire("fresh", "10.0.0.10")

    @pytest.mark.asyncio
    async def test_success_clears_both_keys(self, limiter, counter):
        for _ in range(4):
            await limiter.acquire("alice", "10.0.0.1")

        await limiter.record_success("alice", "10.0.0.1")

        assert counter.counts == {}

    @pytest.mark.asyncio
    async def test_retry_after_falls_back_to_window(self, counter):
        counter.fixed_ttl = 0
        limiter = LoginRateLimiter(counter, max_attempts=1, window_seconds=900)
        await limiter.acquire("alice", None)

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire("alice", None)

        assert exc_info.value.retry_after == 900

    @pytest.mark.asyncio
    async def test_fails_open_when_store_unreachable(self, caplog):
        limiter = LoginRateLimiter(UnreachableCounter())

        for _ in range(10):
            await limiter.acquire("alice", "10.0.0.1")
        await limiter.record_success("alice", "10.0.0.1")

        assert any(record.levelname == "ERROR" for record in caplog.records)


class TestRedisAttemptCounter:
    """Tests for the Redis command sequence."""

    @pytest.mark.asyncio
    async def test_hit_increments_and_anchors_window(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[3, True])
        pipe.__aenter__ = AsyncMock(return_value=pipe)
        pipe.__aexit__ = AsyncMock(return_value=False)
        redis = MagicMock()
        redis.pipeline.return_value = pipe

        count = await RedisAttemptCounter(redis).hit("user:alice", 900)

        assert count == 3
        redis.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("login_attempts:user:alice")
        pipe.expire.assert_called_once_with("login_attempts:user:alice", 900, nx=True)

    @pytest.mark.asyncio
    async def test_ttl_of_missing_key_is_zero(self):
        redis = MagicMock()
        redis.ttl = AsyncMock(return_value=-2)

        assert await RedisAttemptCounter(redis).ttl("ip:10.0.0.1") == 0

    @pytest.mark.asyncio
    async def test_long_keys_are_hashed(self):
        redis = MagicMock()
        redis.delete = AsyncMock()

        await RedisAttemptCounter(redis).reset("user:" + "x" * 80)

        key = redis.delete.call_args.args[0]
        assert key.startswith("login_attempts:")
        assert len(key) == len("login_attempts:") + 16
