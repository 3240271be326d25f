"""
config/redis_client.py
Async Redis client for response caching, slot holds, JWT deny-list
and rate limiting.
"""

import json
import logging
from typing import Any, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


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


def availability_key(guide_id: str, *params: Any) -> str:
    """Cache key for one availability query: prefix by guide, then parameters."""
    suffix = ":".join("" if p is None else str(p) for p in params)
    return f"availability:{guide_id}:{suffix}"


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        try:
            await self.client.setex(key, ttl, json.dumps(value, default=str))
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern. Use carefully in production."""
        try:
            keys = await self.client.keys(pattern)
            if keys:
                return await self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for {pattern}: {e}")
        return 0

    async def invalidate_availability(self, guide_id: str) -> int:
        """Drop every cached availability query for one guide."""
        return await self.delete_pattern(f"availability:{guide_id}:*")

    # ── Slot Holds ───────────────────────────────────────────
    async def hold_slot(self, slot_id: str, reservation_id: str) -> bool:
        """
        Atomic hold using SET NX (set if not exists).
        Returns True if the hold was acquired, False if the slot is already held.
        """
        result = await self.client.set(
            f"slot_hold:{slot_id}",
            reservation_id,
            ex=settings.SLOT_HOLD_MINUTES * 60,
            nx=True,
        )
        return result is True

    async def release_slot_hold(self, slot_id: str) -> None:
        # Holds also expire on their own TTL
        await self.delete(f"slot_hold:{slot_id}")

    async def get_slot_hold(self, slot_id: str) -> Optional[str]:
        return await self.client.get(f"slot_hold:{slot_id}")

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
