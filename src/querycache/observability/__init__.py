"""Observability for querycache.

Provides structured logging and Prometheus counters:
- JSON or console log formatting
- Per-cache hit/miss/invalidation/error counters
"""

from querycache.observability.logging import ConsoleFormatter, JsonFormatter, configure_logging
from querycache.observability.metrics import CacheMetrics

__all__ = [
    # Logging
    "configure_logging",
    "ConsoleFormatter",
    "JsonFormatter",
    # Metrics
    "CacheMetrics",
]
