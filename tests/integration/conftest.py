"""Integration test fixtures backed by a real Redis server.

Set QUERYCACHE_TEST_REDIS_URL (for example redis://localhost:6379/15) to run
these tests. Every test gets its own key prefix and cleans it up afterwards.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncIterator

import pytest

from querycache.cache.store import RedisStore
from querycache.config import CacheSettings
from querycache.runtime import QueryCache

REDIS_URL_ENV = "QUERYCACHE_TEST_REDIS_URL"


def pytest_collection_modifyitems(config, items):
    """Skip redis-marked tests when no server is configured."""
    if os.environ.get(REDIS_URL_ENV):
        return
    skip = pytest.mark.skip(reason=f"{REDIS_URL_ENV} not set")
    for item in items:
        if "redis" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def redis_url() -> str:
    return os.environ[REDIS_URL_ENV]


@pytest.fixture
def redis_settings(redis_url: str) -> CacheSettings:
    return CacheSettings(
        _env_file=None,
        redis_url=redis_url,
        prefix=f"it-{uuid.uuid4().hex[:8]}",
        default_ttl=120,
        compress_threshold=256,
        strict_mode=True,
    )


@pytest.fixture
async def redis_cache(redis_settings: CacheSettings) -> AsyncIterator[QueryCache]:
    """QueryCache on a unique prefix, flushed after the test."""
    store = RedisStore.from_url(redis_settings.redis_url)
    cache = QueryCache(store, redis_settings)
    try:
        yield cache
    finally:
        await cache.invalidator.flush_all()
        await cache.close()
