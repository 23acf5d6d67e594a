"""Global pytest configuration and fixtures.

Behavioural tests run against MemoryStore; tests that need a real Redis
server live under tests/integration and are skipped without one.
"""

from __future__ import annotations

import pytest

from querycache.cache.invalidation import InvalidationManager
from querycache.cache.keys import KeyGenerator, QueryDescriptor
from querycache.cache.manager import CacheManager
from querycache.cache.memory import MemoryStore
from querycache.config import CacheSettings
from querycache.observability.metrics import CacheMetrics


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "redis: test needs a running Redis server (QUERYCACHE_TEST_REDIS_URL)"
    )


@pytest.fixture
def settings() -> CacheSettings:
    """Settings isolated from the environment and any .env file."""
    return CacheSettings(
        _env_file=None,
        prefix="test",
        default_ttl=7200,
        compress_threshold=0,
        strict_mode=False,
        store_metrics=True,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def keys(settings: CacheSettings) -> KeyGenerator:
    return KeyGenerator(prefix=settings.prefix, hash_algo=settings.hash_algo)


@pytest.fixture
def metrics() -> CacheMetrics:
    return CacheMetrics.create(enabled=True)


@pytest.fixture
def manager(
    store: MemoryStore, keys: KeyGenerator, settings: CacheSettings, metrics: CacheMetrics
) -> CacheManager:
    return CacheManager(store, keys, settings, metrics)


@pytest.fixture
def invalidator(
    store: MemoryStore, keys: KeyGenerator, settings: CacheSettings, metrics: CacheMetrics
) -> InvalidationManager:
    return InvalidationManager(store, keys, settings, metrics)


@pytest.fixture
def posts_query() -> QueryDescriptor:
    """Unfiltered query over the posts table."""
    return QueryDescriptor('select * from "posts"')


class RecordingExecutor:
    """Query executor that returns fixed rows and counts its calls."""

    def __init__(self, rows: list[dict]):
        self.rows = rows
        self.calls = 0

    async def __call__(self) -> list[dict]:
        self.calls += 1
        return [dict(row) for row in self.rows]


@pytest.fixture
def executor_factory():
    """Build RecordingExecutor instances."""
    return RecordingExecutor
