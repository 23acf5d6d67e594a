"""Prometheus metrics for querycache.

Complements the hit/miss counters kept in the store with process-local
counters that a host application can expose:
- cache hits and misses per table
- query entries removed by invalidation
- store failures by operation

Each QueryCache owns its own CollectorRegistry so several caches (or test
cases) can coexist without duplicate-registration errors.

Usage:
    metrics = CacheMetrics.create(enabled=True)
    metrics.record_hit("posts")
    payload = metrics.generate_latest()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


@dataclass
class CacheMetrics:
    """Registry of Prometheus counters for one cache instance."""

    cache_hits_total: Any = None
    cache_misses_total: Any = None
    cache_invalidated_total: Any = None
    cache_store_errors_total: Any = None

    _registry: CollectorRegistry | None = field(default=None, repr=False)

    @classmethod
    def create(cls, enabled: bool = True) -> "CacheMetrics":
        """Build the counters, or an inert registry when disabled."""
        metrics = cls()
        if not enabled:
            logger.debug("Metrics are disabled")
            return metrics

        registry = CollectorRegistry()
        metrics._registry = registry

        metrics.cache_hits_total = Counter(
            "querycache_hits_total",
            "Query cache hits",
            ["table"],
            registry=registry,
        )
        metrics.cache_misses_total = Counter(
            "querycache_misses_total",
            "Query cache misses",
            ["table"],
            registry=registry,
        )
        metrics.cache_invalidated_total = Counter(
            "querycache_invalidated_entries_total",
            "Query entries removed by invalidation",
            ["scope"],
            registry=registry,
        )
        metrics.cache_store_errors_total = Counter(
            "querycache_store_errors_total",
            "Failed store operations",
            ["operation"],
            registry=registry,
        )
        return metrics

    @property
    def enabled(self) -> bool:
        return self._registry is not None

    def record_hit(self, table: str) -> None:
        if self.cache_hits_total:
            self.cache_hits_total.labels(table=table).inc()

    def record_miss(self, table: str) -> None:
        if self.cache_misses_total:
            self.cache_misses_total.labels(table=table).inc()

    def record_invalidated(self, scope: str, count: int) -> None:
        """Record entries removed by a table, row or flush invalidation."""
        if self.cache_invalidated_total and count:
            self.cache_invalidated_total.labels(scope=scope).inc(count)

    def record_store_error(self, operation: str) -> None:
        if self.cache_store_errors_total:
            self.cache_store_errors_total.labels(operation=operation).inc()

    def sample(self, name: str, **labels: str) -> float:
        """Current value of a counter sample, 0.0 if absent or disabled."""
        if self._registry is None:
            return 0.0
        value = self._registry.get_sample_value(name, labels)
        return value if value is not None else 0.0

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)
