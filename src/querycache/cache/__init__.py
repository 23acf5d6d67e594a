"""Cache layer for querycache.

Provides query-result caching with index-based invalidation:
- KeyGenerator derives query, table index and row index keys
- CacheManager implements read-through caching of result rows
- InvalidationManager removes entries atomically with their index references
- RedisStore / MemoryStore implement the CacheStore interface
"""

from querycache.cache.invalidation import InvalidationManager
from querycache.cache.keys import KeyGenerator, QueryDescriptor, render_primary_key
from querycache.cache.manager import (
    CacheManager,
    CacheStats,
    QueryOptions,
    resolve_ttl,
)
from querycache.cache.memory import MemoryStore
from querycache.cache.payload import COMPRESSION_MARKER, CacheEntry, PayloadCodec
from querycache.cache.scripts import ATOMIC_DELETE_SCRIPT
from querycache.cache.store import CacheStore, PipelineOp, RedisStore

__all__ = [
    # Keys
    "KeyGenerator",
    "QueryDescriptor",
    "render_primary_key",
    # Read path
    "CacheManager",
    "CacheStats",
    "QueryOptions",
    "resolve_ttl",
    # Invalidation
    "InvalidationManager",
    "ATOMIC_DELETE_SCRIPT",
    # Payloads
    "CacheEntry",
    "PayloadCodec",
    "COMPRESSION_MARKER",
    # Stores
    "CacheStore",
    "PipelineOp",
    "RedisStore",
    "MemoryStore",
]
