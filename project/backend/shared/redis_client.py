"""
Redis client.

Async Redis wrapper with key prefixing, UTF-8 encoding and JSON helpers.
"""

import json
from typing import Any, Optional, Set

import redis.asyncio as redis

from shared.config import settings
from shared.errors import ConfigError, RetryableError
from shared.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Async Redis client bound to the configured key prefix."""

    def __init__(self, url: Optional[str] = None, prefix: Optional[str] = None):
        try:
            self.client = redis.from_url(url or settings.redis_url)
            self.prefix = prefix if prefix is not None else settings.redis_key_prefix
        except Exception as e:
            raise ConfigError(f"Failed to initialize Redis client: {str(e)}") from e

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        """
        Set a string value.

        Args:
            key: Key without prefix
            value: String value
            ex: Optional expiry in seconds

        Returns:
            True if the value was stored
        """
        try:
            return bool(await self.client.set(self._key(key), value.encode("utf-8"), ex=ex))
        except Exception as e:
            raise RetryableError(f"Failed to set Redis key {key}: {str(e)}") from e

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self.client.get(self._key(key))
        except Exception as e:
            raise RetryableError(f"Failed to get Redis key {key}: {str(e)}") from e
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""
        try:
            return await self.client.delete(self._key(key)) > 0
        except Exception as e:
            raise RetryableError(f"Failed to delete Redis key {key}: {str(e)}") from e

    async def set_json(self, key: str, data: Any, ttl: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(data, default=str), ex=ttl)

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            raise RetryableError(f"Failed to decode JSON for Redis key {key}: {str(e)}") from e

    async def sadd(self, key: str, member: str) -> int:
        try:
            return await self.client.sadd(self._key(key), member)
        except Exception as e:
            raise RetryableError(f"Failed to add to Redis set {key}: {str(e)}") from e

    async def srem(self, key: str, member: str) -> int:
        try:
            return await self.client.srem(self._key(key), member)
        except Exception as e:
            raise RetryableError(f"Failed to remove from Redis set {key}: {str(e)}") from e

    async def smembers(self, key: str) -> Set[str]:
        try:
            members = await self.client.smembers(self._key(key))
        except Exception as e:
            raise RetryableError(f"Failed to read Redis set {key}: {str(e)}") from e
        return {m.decode("utf-8") if isinstance(m, bytes) else m for m in members}

    async def health_check(self) -> bool:
        """Return True if Redis answers a ping."""
        try:
            await self.client.ping()
            return True
        except Exception as e:
            logger.warning("Redis health check failed", exc_info=e)
            return False

    async def close(self) -> None:
        await self.client.aclose()
