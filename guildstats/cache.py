"""
Query Cache
Redis-backed TTL cache for computed query results
"""
import json
from typing import Any, Awaitable, Callable, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from structlog import get_logger

logger = get_logger()


class TTLCache:
    """JSON values under ``{prefix}{key}`` with a fixed time to live"""

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 300, prefix: str = 'stats:'):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f'{self.prefix}{key}'

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as e:
            logger.warning("Cache read failed", key=key, error=str(e))
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any):
        try:
            await self.client.set(self._key(key), json.dumps(value, default=str), ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def invalidate(self, key: str):
        try:
            await self.client.delete(self._key(key))
        except RedisError as e:
            logger.warning("Cache invalidation failed", key=key, error=str(e))

    async def get_or_compute(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await compute()
        await self.set(key, value)
        return value
