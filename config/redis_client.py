"""
config/redis_client.py
Async Redis connection plus the two things this service keeps in it:
the JWT deny-list and fixed-window counters for unauthenticated traffic.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Connection (opened in the app lifespan) ──────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency (HTTP and WebSocket)."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── JWT Deny List ─────────────────────────────────────────────
class TokenDenyList:
    """
    Revoked token ids. The accounts service writes `jwt_revoked:<jti>` with a TTL
    equal to the token's remaining lifetime; this service only reads them.
    """

    PREFIX = "jwt_revoked:"

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def is_revoked(self, jti: str) -> bool:
        if not jti:
            return False
        return await self.client.exists(f"{self.PREFIX}{jti}") == 1


# ── Rate Limiting ─────────────────────────────────────────────
class FixedWindowRateLimiter:
    """INCR + EXPIRE NX per key; the first hit in a window starts the clock."""

    def __init__(self, client: aioredis.Redis, limit: int, window_seconds: int = 60):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, key: str) -> bool:
        """Count one request. False once the window's limit is exceeded."""
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, self.window_seconds, nx=True)
        count, _ = await pipe.execute()
        return count <= self.limit
