"""Wiring for a complete query cache.

QueryCache builds every component from one CacheSettings object and one
store, so configuration is passed explicitly rather than looked up globally.

Example:
    settings = load_settings(prefix="blog")
    async with QueryCache.from_settings(settings) as cache:
        rows = await cache.manager.fetch_or_compute(query, "posts", run_query)
        await cache.invalidator.invalidate_row("posts", 1)
"""

from __future__ import annotations

from types import TracebackType

from querycache.cache.invalidation import InvalidationManager
from querycache.cache.keys import KeyGenerator
from querycache.cache.manager import CacheManager
from querycache.cache.store import CacheStore, RedisStore
from querycache.config import CacheSettings
from querycache.observability.metrics import CacheMetrics


class QueryCache:
    """Owns a store and the managers built on top of it."""

    def __init__(self, store: CacheStore, settings: CacheSettings):
        self.store = store
        self.settings = settings
        self.keys = KeyGenerator(prefix=settings.prefix, hash_algo=settings.hash_algo)
        self.metrics = CacheMetrics.create(enabled=settings.store_metrics)
        self.manager = CacheManager(store, self.keys, settings, self.metrics)
        self.invalidator = InvalidationManager(store, self.keys, settings, self.metrics)

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "QueryCache":
        """Create a cache backed by Redis at settings.redis_url."""
        store = RedisStore.from_url(settings.redis_url, socket_timeout=settings.socket_timeout)
        return cls(store, settings)

    async def close(self) -> None:
        """Close store connections."""
        await self.store.close()

    async def __aenter__(self) -> "QueryCache":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
