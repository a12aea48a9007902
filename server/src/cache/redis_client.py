"""
Redis cache for plant history responses.

History queries scan a day or more of sensor points, and the dashboard
polls them. Responses are cached per plant and window with a short TTL.
Every operation is best-effort: Redis failures are logged and the caller
falls back to the store.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-017)
"""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)


def history_key(plant_id: str, window_s: int) -> str:
    return f"history:{plant_id}:{window_s}"


class HistoryCache:
    """Best-effort JSON cache in front of history queries.

    Args:
        url: Redis connection URL. An empty URL disables the cache.
        ttl_s: Expiry of cached entries in seconds.
    """

    def __init__(self, url: str, *, ttl_s: int = 30) -> None:
        self.url = url
        self.ttl_s = ttl_s

    @property
    def enabled(self) -> bool:
        return bool(self.url) and self.ttl_s > 0

    async def _client(self) -> redis.Redis:
        return redis.from_url(self.url)

    async def get(self, key: str) -> str | None:
        """Return the cached JSON string, or None on miss or Redis failure."""
        if not self.enabled:
            return None
        try:
            client = await self._client()
            try:
                cached = await client.get(key)
            finally:
                await client.aclose()
        except Exception:
            logger.warning("Redis read failed for key %s", key, exc_info=True)
            return None
        if cached is None:
            return None
        return cached.decode("utf-8") if isinstance(cached, bytes) else cached

    async def set(self, key: str, value: str) -> None:
        if not self.enabled:
            return
        try:
            client = await self._client()
            try:
                await client.set(key, value, ex=self.ttl_s)
            finally:
                await client.aclose()
        except Exception:
            logger.warning("Redis write failed for key %s", key, exc_info=True)

