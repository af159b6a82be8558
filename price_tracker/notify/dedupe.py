"""Alert rate limiting per (product, alert type)."""

import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class MemoryDedupStore:
    """Process-local map of (product_id, alert_type) -> last sent unix time."""

    def __init__(self):
        self._sent: dict[tuple[int, str], float] = {}

    async def is_rate_limited(self, product_id: int, alert_type: str, now: float, interval: float) -> bool:
        last = self._sent.get((product_id, alert_type))
        return last is not None and last >= now - interval

    async def mark_sent(self, product_id: int, alert_type: str, now: float, interval: float) -> None:
        self._sent[(product_id, alert_type)] = now
        self._evict(now - interval)

    def _evict(self, cutoff: float) -> None:
        stale = [key for key, ts in self._sent.items() if ts < cutoff]
        for key in stale:
            del self._sent[key]

    async def clear(self, product_id: int, alert_type: str) -> None:
        self._sent.pop((product_id, alert_type), None)

    async def clear_all(self) -> None:
        self._sent.clear()

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._sent)


class RedisDedupStore:
    """Redis-backed dedup map; keys expire after the alert interval."""

    KEY_PREFIX = "price_alert"

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self._redis: redis.Redis | None = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _key(self, product_id: int, alert_type: str) -> str:
        return f"{self.KEY_PREFIX}:{product_id}:{alert_type}"

    async def is_rate_limited(self, product_id: int, alert_type: str, now: float, interval: float) -> bool:
        client = await self._get_redis()
        value = await client.get(self._key(product_id, alert_type))
        if value is None:
            return False
        return float(value) >= now - interval

    async def mark_sent(self, product_id: int, alert_type: str, now: float, interval: float) -> None:
        client = await self._get_redis()
        await client.setex(self._key(product_id, alert_type), max(1, int(interval)), str(now))

    async def clear(self, product_id: int, alert_type: str) -> None:
        client = await self._get_redis()
        await client.delete(self._key(product_id, alert_type))

    async def clear_all(self) -> None:
        client = await self._get_redis()
        keys = [key async for key in client.scan_iter(match=f"{self.KEY_PREFIX}:*")]
        if keys:
            await client.delete(*keys)
        logger.info(f"Cleared {len(keys)} alert dedup keys")


def create_dedup_store(settings) -> MemoryDedupStore | RedisDedupStore:
    if settings.alert_dedup_backend == "redis":
        return RedisDedupStore(settings.redis_url)
    return MemoryDedupStore()
