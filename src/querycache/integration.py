"""Entity lifecycle integration.

The data-access layer declares each cached table once and reports entity
lifecycle events; this module turns them into cache reads and invalidations:
- on_saved(table, row): the row's index is invalidated
- on_deleted(table, row): the row's index is invalidated, plus the row
  index of every related row declared in the entity's cascades

Related rows are never discovered by introspection. Each cascade is a
static RelatedInvalidation naming the related table and how to read the
related primary keys from the snapshot available at delete time.

Example:
    hooks = EntityCacheHooks(cache.manager, cache.invalidator)
    hooks.register(
        CacheableEntity(
            "posts",
            ttl=600,
            cascades=(
                RelatedInvalidation.to_one("users", "author_id"),
                RelatedInvalidation.to_many("comments", "comments"),
            ),
        )
    )

    rows = await hooks.fetch("posts", query, run_query)
    await hooks.on_deleted("posts", {"id": 1, "author_id": 7, "comments": [...]})
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from querycache.cache.invalidation import InvalidationManager
from querycache.cache.keys import QueryDescriptor
from querycache.cache.manager import CacheManager, QueryExecutor, QueryOptions
from querycache.cache.payload import Row
from querycache.errors import ConfigurationError

logger = logging.getLogger(__name__)

RelatedKeyResolver = Callable[[Mapping[str, Any]], Iterable[Any]]


@dataclass(frozen=True)
class RelatedInvalidation:
    """A related table to invalidate when an entity is deleted."""

    table: str
    resolve: RelatedKeyResolver

    @classmethod
    def to_one(cls, table: str, foreign_key: str) -> "RelatedInvalidation":
        """Related row referenced by a foreign key column on the entity."""

        def resolve(row: Mapping[str, Any]) -> list[Any]:
            value = row.get(foreign_key)
            return [] if value is None else [value]

        return cls(table=table, resolve=resolve)

    @classmethod
    def to_many(
        cls, table: str, attribute: str, primary_key: str = "id"
    ) -> "RelatedInvalidation":
        """Related rows loaded as a list of mappings under ``attribute``."""

        def resolve(row: Mapping[str, Any]) -> list[Any]:
            children = row.get(attribute) or []
            return [child[primary_key] for child in children if child.get(primary_key) is not None]

        return cls(table=table, resolve=resolve)


@dataclass(frozen=True)
class CacheableEntity:
    """Static caching declaration for one table."""

    table: str
    primary_key: str = "id"
    ttl: int | None = None
    cascades: tuple[RelatedInvalidation, ...] = ()

    def key_of(self, row: Mapping[str, Any]) -> Any:
        """Primary key of a row of this entity."""
        try:
            value = row[self.primary_key]
        except KeyError:
            raise ConfigurationError(
                f"Row of {self.table} has no primary key column {self.primary_key!r}"
            ) from None
        if value is None:
            raise ConfigurationError(f"Row of {self.table} has a null primary key")
        return value


class EntityCacheHooks:
    """Registry of cached entities and their lifecycle callbacks."""

    def __init__(self, manager: CacheManager, invalidator: InvalidationManager):
        self.manager = manager
        self.invalidator = invalidator
        self._entities: dict[str, CacheableEntity] = {}

    def register(self, entity: CacheableEntity) -> None:
        """Declare a cached table."""
        if entity.table in self._entities:
            logger.warning(f"Replacing cache registration for table {entity.table}")
        self._entities[entity.table] = entity
        logger.debug(
            f"Registered cacheable entity {entity.table} "
            f"with {len(entity.cascades)} cascade(s)"
        )

    def entity(self, table: str) -> CacheableEntity:
        """Registration for a table.

        Raises ConfigurationError for tables that were never registered.
        """
        try:
            return self._entities[table]
        except KeyError:
            raise ConfigurationError(f"Table {table} is not registered for caching") from None

    @property
    def tables(self) -> list[str]:
        return sorted(self._entities)

    async def fetch(
        self,
        table: str,
        query: QueryDescriptor,
        execute: QueryExecutor,
        options: QueryOptions | None = None,
    ) -> list[Row]:
        """Read-through fetch using the entity's primary key and TTL."""
        entity = self.entity(table)
        return await self.manager.fetch_or_compute(
            query,
            entity.table,
            execute,
            primary_key=entity.primary_key,
            options=options,
            entity_ttl=entity.ttl,
        )

    async def on_saved(self, table: str, row: Mapping[str, Any]) -> int:
        """Handle an insert or update of a row."""
        entity = self.entity(table)
        return await self.invalidator.invalidate_row(entity.table, entity.key_of(row))

    async def on_deleted(self, table: str, row: Mapping[str, Any]) -> int:
        """Handle a delete, cascading to the declared related rows."""
        entity = self.entity(table)
        removed = await self.invalidator.invalidate_row(entity.table, entity.key_of(row))

        for cascade in entity.cascades:
            try:
                related_keys = list(cascade.resolve(row))
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning(
                    f"Cannot resolve related {cascade.table} rows of {entity.table}: {e}"
                )
                continue
            removed += await self.invalidator.invalidate_rows(cascade.table, related_keys)

        return removed
