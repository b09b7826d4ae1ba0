"""
config/redis_client.py
Async Redis client for booking locks.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None

# Delete the key only while it still holds the caller's token, so an
# expired-and-reacquired lock is never released by the previous owner.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisCache:
    """Helper class for common Redis patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Locking ──────────────────────────────────────────────
    async def acquire_lock(self, key: str, token: str, ttl: int = settings.BOOKING_LOCK_TTL_SECONDS) -> bool:
        """
        Atomic lock using SET NX (set if not exists).
        Returns True if lock acquired, False if already held.
        """
        result = await self.client.set(
            key,
            token,
            ex=ttl,
            nx=True,  # Only set if key doesn't exist
        )
        return result is True

    async def release_lock(self, key: str, token: str) -> bool:
        released = await self.client.eval(_RELEASE_SCRIPT, 1, key, token)
        return released == 1

