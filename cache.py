"""
Redis cache facade and the read-through helper built on it.

The cache is advisory: every redis failure is logged and treated as a miss
(reads) or a no-op (writes/deletes). The store stays the source of truth.
"""
import json
import logging
from typing import Any, Callable, Optional

import redis

from settings import Settings

logger = logging.getLogger("flamecrumble.cache")


class CacheKeys:
    PRODUCTS = "products"

    @staticmethod
    def product(product_id: str) -> str:
        return f"product:{product_id}"

    @staticmethod
    def cart(owner_id: str) -> str:
        return f"cart:{owner_id}"

    @staticmethod
    def wishlist(owner_id: str) -> str:
        return f"wishlist:{owner_id}"

    @staticmethod
    def order(order_id: str) -> str:
        return f"order:{order_id}"

    @staticmethod
    def order_history(owner_id: str) -> str:
        return f"order:history:{owner_id}"


class Cache:
    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set_with_ttl(self, key: str, value: str, ttl: int) -> None:
        try:
            self.client.setex(key, ttl, value)
        except redis.RedisError as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self.client.delete(*keys)
        except redis.RedisError as exc:
            # Entries expire on their own; the mutation itself already committed
            logger.warning("Cache invalidation failed for %s: %s", ", ".join(keys), exc)

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as exc:
            logger.warning("Cache close failed: %s", exc)


class ReadThrough:
    """Cache-aside reads: try the cache, fall back to the loader, repopulate."""

    def __init__(self, cache: Cache):
        self.cache = cache

    def read(self, key: str, loader: Callable[[], Any], ttl: int, cache_empty: bool = False) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            try:
                return json.loads(cached)
            except ValueError:
                logger.warning("Discarding undecodable cache entry %s", key)
                self.cache.delete(key)
        value = loader()
        if value is None:
            return None
        if value or cache_empty:
            self.cache.set_with_ttl(key, json.dumps(value), ttl)
        return value

    def invalidate(self, *keys: str) -> None:
        self.cache.delete(*keys)


def connect_cache(settings: Settings) -> Cache:
    client = redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.cache_timeout_seconds,
        socket_connect_timeout=settings.cache_timeout_seconds,
    )
    logger.info("Redis client created for %s", settings.redis_url.split("@")[-1])
    return Cache(client)
