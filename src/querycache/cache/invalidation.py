"""Surgical cache invalidation.

Removes only the cached queries that depend on a table or a row:
- invalidate_table(): every query registered in the table index, then all
  row index sets of the table, then the table index itself
- invalidate_row(): every query registered in one row index, then the row
  index itself
- flush_all(): every key under the prefix

Each query entry is removed with ATOMIC_DELETE_SCRIPT, which deletes the
entry and drops it from all its index sets in one server-side step. The
index sets are rebuilt from the entry's own payload with the same
KeyGenerator that registered them.

Example:
    invalidator = InvalidationManager(store, keys, settings)

    # After UPDATE posts SET ... WHERE id = 1
    await invalidator.invalidate_row("posts", 1)

    # After a bulk import into posts
    await invalidator.invalidate_table("posts")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from querycache.cache.keys import KeyGenerator
from querycache.cache.payload import CacheEntry, PayloadCodec
from querycache.cache.scripts import ATOMIC_DELETE_SCRIPT
from querycache.cache.store import CacheStore
from querycache.config import CacheSettings
from querycache.errors import CacheStoreError, PayloadDecodeError
from querycache.observability.metrics import CacheMetrics

logger = logging.getLogger(__name__)


class InvalidationManager:
    """Deletes cached queries and keeps their index sets consistent."""

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

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def invalidate_table(self, table: str) -> int:
        """Invalidate every cached query that depends on a table.

        Returns the number of query entries removed.
        """
        table_index = self.keys.table_index_key(table)

        removed = await self._delete_indexed(table_index)
        await self._delete_matching(self.keys.row_index_pattern(table))
        # Entries registered while the row indexes were being dropped are
        # still listed in the table index; sweep them before deleting it
        removed += await self._delete_indexed(table_index)
        await self._guard(self.store.delete(table_index), table_index)

        self.metrics.record_invalidated("table", removed)
        logger.info(f"Invalidated table {table}: {removed} cached queries removed")
        return removed

    async def invalidate_row(self, table: str, primary_key: Any) -> int:
        """Invalidate every cached query whose result includes one row.

        Returns the number of query entries removed.
        """
        row_index = self.keys.row_index_key(table, primary_key)

        removed = await self._delete_indexed(row_index)
        await self._guard(self.store.delete(row_index), row_index)

        self.metrics.record_invalidated("row", removed)
        logger.debug(f"Invalidated row {table}:{primary_key}: {removed} cached queries removed")
        return removed

    async def invalidate_rows(self, table: str, primary_keys: Iterable[Any]) -> int:
        """Invalidate several rows of one table."""
        removed = 0
        for primary_key in primary_keys:
            removed += await self.invalidate_row(table, primary_key)
        return removed

    async def flush_all(self) -> int:
        """Delete every key under the configured prefix.

        Returns the number of keys deleted.
        """
        deleted = await self._delete_matching(self.keys.namespace_pattern())
        self.metrics.record_invalidated("flush", deleted)
        logger.info(f"Flushed cache namespace {self.keys.prefix}: {deleted} keys deleted")
        return deleted

    # -------------------------------------------------------------------------
    # Atomic delete
    # -------------------------------------------------------------------------

    async def _delete_indexed(self, index_key: str) -> int:
        """Atomically delete every query listed in an index set."""
        try:
            query_keys = await self.store.smembers(index_key)
        except CacheStoreError as e:
            self._degrade(e, index_key, "Cannot read index")
            return 0

        removed = 0
        for query_key in sorted(query_keys):
            try:
                removed += await self.atomic_delete(query_key, index_key)
            except CacheStoreError as e:
                self._degrade(e, query_key, "Atomic delete failed, skipping entry")
        return removed

    async def atomic_delete(self, query_key: str, source_index: str | None = None) -> int:
        """Delete one query entry and remove it from all its index sets.

        The index sets are rebuilt from the entry's payload. When the payload
        is already gone or cannot be decoded, only ``source_index`` (the set
        the key was found through) is cleaned.

        Returns 1 if the entry existed, 0 otherwise.
        """
        index_keys: list[str] = []
        raw = await self.store.get(query_key)

        if raw is None:
            logger.debug("Entry already expired or deleted", extra={"cache_key": query_key})
        else:
            try:
                entry = self.codec.decode(raw, key=query_key)
            except PayloadDecodeError as e:
                logger.warning(
                    f"Undecodable entry, deleting without index metadata: {e}",
                    extra={"cache_key": query_key},
                )
            else:
                index_keys = self.index_keys_for(entry)

        if source_index is not None and source_index not in index_keys:
            index_keys.append(source_index)

        result = await self.store.run_script(ATOMIC_DELETE_SCRIPT, [query_key, *index_keys])
        return 1 if result else 0

    def index_keys_for(self, entry: CacheEntry) -> list[str]:
        """Every index set an entry was registered in at write time."""
        index_keys = [self.keys.table_index_key(entry.table)]
        index_keys.extend(self.keys.row_index_key(entry.table, pk) for pk in entry.pks)
        return index_keys

    # -------------------------------------------------------------------------
    # Pattern delete
    # -------------------------------------------------------------------------

    async def _delete_matching(self, pattern: str) -> int:
        """Delete keys matching a pattern, SCANning in fixed-size batches.

        Returns the number of keys deleted.
        """
        batch_size = self.settings.scan_batch_size
        batch: list[str] = []
        deleted = 0

        try:
            async for key in self.store.scan(pattern, count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += await self._delete_batch(batch)
                    batch = []
        except CacheStoreError as e:
            self._degrade(e, pattern, "Key scan failed")

        if batch:
            deleted += await self._delete_batch(batch)
        return deleted

    async def _delete_batch(self, keys: list[str]) -> int:
        try:
            return await self.store.delete(*keys)
        except CacheStoreError as e:
            self._degrade(e, keys[0], f"Batch delete of {len(keys)} keys failed")
            return 0

    # -------------------------------------------------------------------------
    # Failure policy
    # -------------------------------------------------------------------------

    async def _guard(self, operation: Any, key: str) -> Any:
        try:
            return await operation
        except CacheStoreError as e:
            self._degrade(e, key, "Index cleanup failed")
            return None

    def _degrade(self, error: CacheStoreError, key: str, message: str) -> None:
        """Raise in strict mode; otherwise log and let the batch continue."""
        self.metrics.record_store_error(error.operation or "unknown")
        if self.settings.strict_mode:
            raise error
        logger.warning(f"{message}: {error}", extra={"cache_key": key})
