"""Read-through query caching.

fetch_or_compute() implements the cache-aside flow:
1. Look up the query key in the store
2. On a hit, return the stored rows without touching the data source
3. On a miss, run the query and store non-empty results together with
   their table and row index registrations in one pipeline

Store failures never fail a read in lenient mode: the query runs against the
data source instead. In strict mode they propagate to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from querycache.cache.keys import KeyGenerator, QueryDescriptor
from querycache.cache.payload import (
    CacheEntry,
    PayloadCodec,
    PrimaryKeyExtractor,
    Row,
    extract_primary_keys,
)
from querycache.cache.store import CacheStore, PipelineOp
from querycache.config import CacheSettings
from querycache.errors import CacheStoreError, PayloadDecodeError
from querycache.observability.metrics import CacheMetrics

logger = logging.getLogger(__name__)

QueryExecutor = Callable[[], Awaitable[list[Row]]]

HITS = "hits"
MISSES = "misses"


@dataclass(frozen=True)
class QueryOptions:
    """Per-call caching options.

    skip_cache bypasses the store entirely for this call. ttl_override takes
    precedence over entity and global TTLs; 0 stores without expiry.
    """

    skip_cache: bool = False
    ttl_override: int | None = None


DEFAULT_OPTIONS = QueryOptions()


def resolve_ttl(
    default_ttl: int,
    entity_ttl: int | None = None,
    ttl_override: int | None = None,
) -> int:
    """Effective TTL: per-call override, then entity default, then global.

    Negative values clamp to 0 (no expiry). An entity TTL of 0 means "not
    set" and falls through to the global default.
    """
    if ttl_override is not None:
        return max(0, ttl_override)
    if entity_ttl:
        return max(0, entity_ttl)
    return max(0, default_ttl)


@dataclass
class CacheStats:
    """Hit/miss counters and keyspace size."""

    hits: int
    misses: int
    total_keys: int | None = None

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_ratio(self) -> float | None:
        """Fraction of lookups served from cache, None before any lookup."""
        if self.total == 0:
            return None
        return round(self.hits / self.total, 4)


class CacheManager:
    """Orchestrates read-through caching of query results."""

    def __init__(
        self,
        store: CacheStore,
        keys: KeyGenerator,
        settings: CacheSettings,
        metrics: CacheMetrics | None = None,
    ):
        self.store = store
        self.keys = keys
        self.settings = settings
        self.metrics = metrics or CacheMetrics.create(enabled=False)
        self.codec = PayloadCodec(
            compress_threshold=settings.compress_threshold,
            compression_level=settings.compression_level,
        )

    async def fetch_or_compute(
        self,
        query: QueryDescriptor,
        table: str,
        execute: QueryExecutor,
        *,
        primary_key: PrimaryKeyExtractor = "id",
        options: QueryOptions | None = None,
        entity_ttl: int | None = None,
    ) -> list[Row]:
        """Return the rows for a query, from cache when possible.

        Args:
            query: Structural description used to derive the cache key
            table: Table the result rows belong to
            execute: Runs the query against the data source
            primary_key: Column name or callable extracting a row's primary key
            options: Per-call skip/TTL options
            entity_ttl: Default TTL for this table, if it has one

        Returns:
            The result rows. execute() is called at most once.
        """
        options = options or DEFAULT_OPTIONS
        if not self.settings.enabled or options.skip_cache:
            return await execute()

        try:
            key = self.keys.query_key(query)
        except (TypeError, ValueError) as e:
            logger.warning(
                f"Cannot derive cache key, executing query uncached: {e}",
                extra={"table": table},
            )
            return await execute()

        try:
            cached = await self.store.get(key)
        except CacheStoreError as e:
            self._degrade(e, key, "Cache read failed, executing query directly")
            return await execute()

        if cached is not None:
            try:
                entry = self.codec.decode(cached, key=key)
            except PayloadDecodeError as e:
                logger.warning(
                    f"Discarding unreadable cache entry: {e}",
                    extra={"cache_key": key, "table": table},
                )
            else:
                await self._count(HITS)
                self.metrics.record_hit(table)
                return entry.data

        await self._count(MISSES)
        self.metrics.record_miss(table)

        rows = await execute()
        if not rows:
            # Caching an empty result would hide rows inserted later
            return rows

        ttl = resolve_ttl(self.settings.default_ttl, entity_ttl, options.ttl_override)
        try:
            await self._store(key, query, table, rows, primary_key, ttl)
        except CacheStoreError as e:
            self._degrade(e, key, "Cache write failed, returning uncached result")
        return rows

    async def _store(
        self,
        key: str,
        query: QueryDescriptor,
        table: str,
        rows: list[Row],
        primary_key: PrimaryKeyExtractor,
        ttl: int,
    ) -> None:
        """Write the entry and its index registrations in one pipeline.

        The pipeline is not atomic; a partial failure can only leave an index
        member whose entry is missing, which invalidation tolerates.
        """
        pks = extract_primary_keys(rows, primary_key)
        entry = CacheEntry(
            table=table,
            pks=pks,
            relations=sorted(query.relations),
            data=[dict(row) for row in rows],
        )

        try:
            payload = self.codec.encode(entry)
        except TypeError as e:
            logger.warning(
                f"Result rows are not serializable, skipping cache: {e}",
                extra={"cache_key": key, "table": table},
            )
            return

        operations = [
            PipelineOp.set(key, payload, ttl),
            PipelineOp.sadd(self.keys.table_index_key(table), key),
        ]
        operations.extend(PipelineOp.sadd(self.keys.row_index_key(table, pk), key) for pk in pks)

        await self.store.pipeline(operations)
        logger.debug(
            f"Cached {len(rows)} rows for {table} ({len(pks)} row indexes, ttl={ttl})",
            extra={"cache_key": key},
        )

    async def _count(self, name: str) -> None:
        """Increment a store-side metrics counter, ignoring failures."""
        if not self.settings.store_metrics:
            return
        try:
            await self.store.incr(self.keys.metrics_key(name))
        except CacheStoreError as e:
            logger.debug(f"Failed to increment {name} counter: {e}")

    def _degrade(self, error: CacheStoreError, key: str, message: str) -> None:
        """Apply the failure policy: raise in strict mode, log otherwise."""
        self.metrics.record_store_error(error.operation or "unknown")
        if self.settings.strict_mode:
            raise error
        logger.warning(f"{message}: {error}", extra={"cache_key": key})

    async def get_stats(self, database: int = 0) -> CacheStats:
        """Read hit/miss counters and the keyspace size.

        Raises CacheStoreError if the store is unreachable.
        """
        hits = await self.store.get(self.keys.metrics_key(HITS))
        misses = await self.store.get(self.keys.metrics_key(MISSES))

        keyspace = await self.store.info("keyspace")
        db_info = keyspace.get(f"db{database}")
        total_keys = _keyspace_count(db_info)

        return CacheStats(
            hits=int(hits or 0),
            misses=int(misses or 0),
            total_keys=total_keys,
        )


def _keyspace_count(db_info: Any) -> int | None:
    """Key count from an INFO keyspace entry (parsed dict or raw string)."""
    if isinstance(db_info, Mapping):
        return int(db_info.get("keys", 0))
    if isinstance(db_info, str):
        # Raw form: "keys=12,expires=3,avg_ttl=0"
        fields = dict(part.split("=", 1) for part in db_info.split(",") if "=" in part)
        return int(fields.get("keys", 0))
    if db_info is None:
        return 0
    return None
