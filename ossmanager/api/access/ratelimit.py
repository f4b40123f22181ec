"""
Login attempt throttling.

Login attempts are counted per username and per client address in a shared
store before any password check. Once a key passes the limit, further
attempts are rejected until its window expires; a successful login clears
both keys.
"""

import hashlib
import logging
from typing import Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ossmanager.api.config import settings
from ossmanager.api.exceptions import RateLimited


logger = logging.getLogger(__name__)


class AttemptCounter(Protocol):
    """Shared counter of login attempts with a fixed expiry window."""

    async def hit(self, key: str, window: int) -> int:
        """Increment the key, starting its window on the first hit. Returns the new count."""
        ...

    async def ttl(self, key: str) -> int:
        """Seconds until the key's window closes, 0 if the key is absent."""
        ...

    async def reset(self, key: str) -> None:
        ...


class RedisAttemptCounter:
    """AttemptCounter backed by Redis INCR/EXPIRE."""

    def __init__(self, redis: Redis, key_prefix: str = "login_attempts"):
        self.redis = redis
        self.key_prefix = key_prefix

    def _make_key(self, identifier: str) -> str:
        # Hash long identifiers to keep key size reasonable
        if len(identifier) > 50:
            identifier = hashlib.sha256(identifier.encode()).hexdigest()[:16]
        return f"{self.key_prefix}:{identifier}"

    async def hit(self, key: str, window: int) -> int:
        redis_key = self._make_key(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            # NX keeps the window anchored at the first failure
            pipe.expire(redis_key, window, nx=True)
            count, _ = await pipe.execute()
        return int(count)

    async def ttl(self, key: str) -> int:
        remaining = await self.redis.ttl(self._make_key(key))
        return max(int(remaining), 0)

    async def reset(self, key: str) -> None:
        await self.redis.delete(self._make_key(key))


class LoginRateLimiter:
    """Applies the login attempt policy over an AttemptCounter."""

    def __init__(
        self,
        counter: AttemptCounter,
        max_attempts: int = 5,
        window_seconds: int = 900,
    ):
        self.counter = counter
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @staticmethod
    def _keys(username: str, ip_address: Optional[str]) -> list:
        keys = [f"user:{username.lower()}"]
        if ip_address:
            keys.append(f"ip:{ip_address}")
        return keys

    async def acquire(self, username: str, ip_address: Optional[str]) -> None:
        """
        Count the attempt against every key before the password is checked.

        The increment and the limit comparison use the same atomic counter
        result, so concurrent attempts cannot all observe a count under the
        limit. At most ``max_attempts`` attempts per key reach the password
        check within one window.

        Raises:
            RateLimited: With the seconds left in the blocking window
        """
        blocked = []
        for key in self._keys(username, ip_address):
            try:
                attempts = await self.counter.hit(key, self.window_seconds)
                if attempts <= self.max_attempts:
                    continue
                retry_after = await self.counter.ttl(key) or self.window_seconds
            except RedisError:
                # Fail open when the counter store is unreachable
                logger.error("Login attempt count failed, allowing request", extra={"key": key}, exc_info=True)
                continue
            blocked.append((key, attempts, retry_after))

        if blocked:
            key, attempts, retry_after = max(blocked, key=lambda entry: entry[2])
            logger.warning(
                "Login rate limit exceeded",
                extra={"key": key, "attempts": attempts, "retry_after": retry_after},
            )
            raise RateLimited(retry_after=retry_after)

    async def record_success(self, username: str, ip_address: Optional[str]) -> None:
        for key in self._keys(username, ip_address):
            try:
                await self.counter.reset(key)
            except RedisError:
                logger.error("Failed to reset login attempts", extra={"key": key}, exc_info=True)


_redis: Optional[Redis] = None


def get_redis() -> Redis:
    """Get or create the shared Redis client."""
    global _redis
    if _redis is None:
        _redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_login_rate_limiter() -> LoginRateLimiter:
    """Dependency providing the login limiter over the shared counter."""
    return LoginRateLimiter(
        RedisAttemptCounter(get_redis()),
        max_attempts=settings.LOGIN_MAX_ATTEMPTS,
        window_seconds=settings.LOGIN_WINDOW_SECONDS,
    )
