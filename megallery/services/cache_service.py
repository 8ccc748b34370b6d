"""Cache service wrapping Redis operations."""
import logging
from typing import Any, Optional
from uuid import UUID

from megallery.core.redis import RedisClient, redis_client

logger = logging.getLogger(__name__)


class CacheService:
    """Service for metadata caching using Redis.

    Cache errors are logged and treated as misses; Redis being down never
    fails a request.
    """

    def __init__(self, redis: Optional[RedisClient] = None, metadata_ttl: int = 3600):
        """
        Initialize cache service.

        Args:
            redis: Redis client (module singleton if None)
            metadata_ttl: TTL of metadata entries in seconds
        """
        self.redis = redis or redis_client
        self.metadata_ttl = metadata_ttl

    # Metadata caching

    async def get_metadata(self, key: str) -> Optional[Any]:
        """
        Get cached metadata (JSON).

        Args:
            key: Cache key

        Returns:
            Cached data or None
        """
        try:
            return await self.redis.get_json(f"metadata:{key}")
        except Exception as e:
            logger.warning(f"Cache get error: {e}")
            return None

    async def set_metadata(self, key: str, data: Any):
        """
        Cache metadata (JSON) with TTL.

        Args:
            key: Cache key
            data: Data to cache
        """
        try:
            await self.redis.set_json(f"metadata:{key}", data, ex=self.metadata_ttl)
        except Exception as e:
            logger.warning(f"Cache set error: {e}")

    async def delete_metadata(self, key: str):
        try:
            await self.redis.delete(f"metadata:{key}")
        except Exception as e:
            logger.warning(f"Cache delete error: {e}")

    async def clear_pattern(self, pattern: str):
        """
        Clear all keys matching pattern.

        Args:
            pattern: Key pattern (e.g., "metadata:layout:*")
        """
        try:
            await self.redis.clear_pattern(pattern)
        except Exception as e:
            logger.warning(f"Cache clear error: {e}")

    # Layouts

    @staticmethod
    def layout_key(collection_id: UUID, generation: int) -> str:
        return f"layout:{collection_id}:{generation}"

    async def get_layout(self, collection_id: UUID, generation: int) -> Optional[dict]:
        return await self.get_metadata(self.layout_key(collection_id, generation))

    async def set_layout(self, collection_id: UUID, generation: int, layout: dict):
        await self.set_metadata(self.layout_key(collection_id, generation), layout)

    async def invalidate_collection(self, collection_id: UUID):
        """Drop every cached layout of a collection."""
        await self.clear_pattern(f"metadata:layout:{collection_id}:*")

    # Health check

    async def ping(self) -> bool:
        """
        Check if cache is available.

        Returns:
            True if cache is responding
        """
        try:
            return await self.redis.ping()
        except Exception:
            return False
