"""Tests for surgical cache invalidation."""

from unittest.mock import AsyncMock

import pytest

from querycache.cache.invalidation import InvalidationManager
from querycache.cache.keys import QueryDescriptor
from querycache.cache.scripts import ATOMIC_DELETE_SCRIPT
from querycache.errors import CacheCommandError, CacheConnectionError

ALL_POSTS = QueryDescriptor('select * from "posts"')
POST_1 = QueryDescriptor('select * from "posts" where "id" = ?', (1,))
POST_2 = QueryDescriptor('select * from "posts" where "id" = ?', (2,))
USERS = QueryDescriptor('select * from "users"')


def _rows(*ids: int) -> list[dict]:
    return [{"id": i, "title": f"Post {i}"} for i in ids]


@pytest.fixture
async def populated(manager, executor_factory):
    """Cache all posts, post 1, post 2 and all users."""
    await manager.fetch_or_compute(ALL_POSTS, "posts", executor_factory(_rows(1, 2, 3)))
    await manager.fetch_or_compute(POST_1, "posts", executor_factory(_rows(1)))
    await manager.fetch_or_compute(POST_2, "posts", executor_factory(_rows(2)))
    await manager.fetch_or_compute(USERS, "users", executor_factory([{"id": 1, "name": "a"}]))
    return manager


class TestInvalidateRow:
    """Test row-level invalidation."""

    @pytest.mark.asyncio
    async def test_removes_only_dependent_queries(
        self, populated, invalidator, store, keys
    ) -> None:
        """Updating post 1 keeps the post 2 entry."""
        removed = await invalidator.invalidate_row("posts", 1)

        assert removed == 2
        assert await store.get(keys.query_key(ALL_POSTS)) is None
        assert await store.get(keys.query_key(POST_1)) is None
        assert await store.get(keys.query_key(POST_2)) is not None
        assert await store.get(keys.query_key(USERS)) is not None

    @pytest.mark.asyncio
    async def test_cleans_every_index(self, populated, invalidator, store, keys) -> None:
        """Deleted entries disappear from all index sets, not only the row's."""
        await invalidator.invalidate_row("posts", 1)

        all_posts_key = keys.query_key(ALL_POSTS)
        assert await store.smembers(keys.row_index_key("posts", 1)) == set()
        assert all_posts_key not in await store.smembers(keys.row_index_key("posts", 2))
        assert all_posts_key not in await store.smembers(keys.row_index_key("posts", 3))
        assert await store.smembers(keys.table_index_key("posts")) == {keys.query_key(POST_2)}

    @pytest.mark.asyncio
    async def test_string_primary_key(self, populated, invalidator, store, keys) -> None:
        """A string key invalidates entries registered with an integer key."""
        assert await invalidator.invalidate_row("posts", "1") == 2

    @pytest.mark.asyncio
    async def test_idempotent(self, populated, invalidator, store) -> None:
        """A second invalidation finds nothing and changes nothing."""
        await invalidator.invalidate_row("posts", 1)
        snapshot = sorted(store.keys())

        assert await invalidator.invalidate_row("posts", 1) == 0
        assert sorted(store.keys()) == snapshot

    @pytest.mark.asyncio
    async def test_unknown_row(self, populated, invalidator) -> None:
        assert await invalidator.invalidate_row("posts", 999) == 0

    @pytest.mark.asyncio
    async def test_invalidate_rows(self, populated, invalidator, store, keys) -> None:
        removed = await invalidator.invalidate_rows("posts", [1, 2])

        assert removed == 3
        assert await store.smembers(keys.table_index_key("posts")) == set()

    @pytest.mark.asyncio
    async def test_records_metrics(self, populated, invalidator, metrics) -> None:
        await invalidator.invalidate_row("posts", 1)
        assert metrics.sample("querycache_invalidated_entries_total", scope="row") == 2.0


class TestInvalidateTable:
    """Test table-level invalidation."""

    @pytest.mark.asyncio
    async def test_removes_all_table_keys(self, populated, invalidator, store, keys) -> None:
        """No entry, row index or table index of the table survives."""
        removed = await invalidator.invalidate_table("posts")

        assert removed == 3
        remaining = store.keys()
        assert not any(":rowindex:table:posts:" in key for key in remaining)
        assert keys.table_index_key("posts") not in remaining
        assert await store.get(keys.query_key(USERS)) is not None
        assert await store.smembers(keys.table_index_key("users")) == {keys.query_key(USERS)}

    @pytest.mark.asyncio
    async def test_idempotent(self, populated, invalidator, store) -> None:
        """A second table invalidation finds nothing and changes nothing."""
        await invalidator.invalidate_table("posts")
        snapshot = sorted(store.keys())

        assert await invalidator.invalidate_table("posts") == 0
        assert sorted(store.keys()) == snapshot

    @pytest.mark.asyncio
    async def test_removes_orphan_row_indexes(self, invalidator, store, keys) -> None:
        """Row indexes whose entries already expired are dropped too."""
        await store.sadd(keys.row_index_key("posts", 7), "test:query:gone")

        assert await invalidator.invalidate_table("posts") == 0
        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_many_row_indexes_in_batches(self, store, keys, settings) -> None:
        """Row indexes beyond one SCAN batch are all deleted."""
        invalidator = InvalidationManager(
            store, keys, settings.model_copy(update={"scan_batch_size": 10})
        )
        for pk in range(1, 36):
            await store.sadd(keys.row_index_key("posts", pk), f"test:query:{pk}")

        await invalidator.invalidate_table("posts")

        assert store.keys() == []

    @pytest.mark.asyncio
    async def test_table_name_with_glob_characters(
        self, manager, invalidator, store, keys, executor_factory
    ) -> None:
        """A table named with glob characters only matches itself."""
        await manager.fetch_or_compute(
            QueryDescriptor('select * from "t*"'), "t*", executor_factory(_rows(1))
        )
        await manager.fetch_or_compute(
            QueryDescriptor("select * from tx"), "tx", executor_factory(_rows(1))
        )

        await invalidator.invalidate_table("t*")

        assert await store.smembers(keys.row_index_key("tx", 1)) != set()


class TestFlushAll:
    """Test namespace flush."""

    @pytest.mark.asyncio
    async def test_flush_all_keeps_other_prefixes(self, populated, invalidator, store) -> None:
        await store.set("other:query:x", b"{}")

        deleted = await invalidator.flush_all()

        assert deleted > 0
        assert store.keys() == ["other:query:x"]

    @pytest.mark.asyncio
    async def test_flush_empty(self, invalidator) -> None:
        assert await invalidator.flush_all() == 0


class TestAtomicDelete:
    """Test single-entry deletion."""

    @pytest.mark.asyncio
    async def test_missing_entry_cleans_source_index(self, invalidator, store, keys) -> None:
        """A dangling index member is removed even when the entry expired."""
        index = keys.row_index_key("posts", 1)
        await store.sadd(index, "test:query:expired")

        assert await invalidator.atomic_delete("test:query:expired", index) == 0
        assert await store.smembers(index) == set()

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_deleted(self, invalidator, store, keys) -> None:
        """Undecodable payloads are still deleted and unlinked from the source index."""
        index = keys.row_index_key("posts", 1)
        await store.set("test:query:bad", b"C::not-gzip")
        await store.sadd(index, "test:query:bad")

        assert await invalidator.invalidate_row("posts", 1) == 1
        assert await store.get("test:query:bad") is None
        assert store.keys() == []


class TestFailurePolicy:
    """Test strict and lenient handling of store failures."""

    def _store(self) -> AsyncMock:
        store = AsyncMock()
        store.smembers.return_value = {"test:query:a", "test:query:b"}
        store.get.return_value = None
        store.run_script.side_effect = [
            CacheCommandError("EVAL failed", operation="EVAL"),
            1,
        ]
        return store

    @pytest.mark.asyncio
    async def test_lenient_continues_after_failure(self, keys, settings) -> None:
        """One failed delete is skipped; the rest of the batch proceeds."""
        store = self._store()
        invalidator = InvalidationManager(store, keys, settings)

        assert await invalidator.invalidate_row("posts", 1) == 1
        assert store.run_script.await_count == 2
        store.delete.assert_awaited_once_with(keys.row_index_key("posts", 1))

    @pytest.mark.asyncio
    async def test_strict_raises(self, keys, settings) -> None:
        store = self._store()
        invalidator = InvalidationManager(
            store, keys, settings.model_copy(update={"strict_mode": True})
        )

        with pytest.raises(CacheCommandError):
            await invalidator.invalidate_row("posts", 1)
        assert store.run_script.await_count == 1

    @pytest.mark.asyncio
    async def test_lenient_unreachable_store(self, keys, settings) -> None:
        store = AsyncMock()
        store.smembers.side_effect = CacheConnectionError("refused", operation="SMEMBERS")
        store.delete.side_effect = CacheConnectionError("refused", operation="DEL")
        invalidator = InvalidationManager(store, keys, settings)

        assert await invalidator.invalidate_row("posts", 1) == 0

    @pytest.mark.asyncio
    async def test_script_receives_all_index_keys(self, keys, settings) -> None:
        """The script gets the entry key followed by every index it was registered in."""
        store = AsyncMock()
        store.get.return_value = b'{"table": "posts", "pks": [1, 2], "data": []}'
        store.run_script.return_value = 1
        invalidator = InvalidationManager(store, keys, settings)

        await invalidator.atomic_delete("test:query:a")

        store.run_script.assert_awaited_once_with(
            ATOMIC_DELETE_SCRIPT,
            [
                "test:query:a",
                keys.table_index_key("posts"),
                keys.row_index_key("posts", 1),
                keys.row_index_key("posts", 2),
            ],
        )


class TestEndToEnd:
    """Full lifecycle against one store."""

    @pytest.mark.asyncio
    async def test_update_then_refetch(self, manager, invalidator, executor_factory) -> None:
        """After invalidating a row, dependent queries hit the data source again."""
        all_posts = executor_factory(_rows(1, 2, 3))
        post_2 = executor_factory(_rows(2))

        await manager.fetch_or_compute(ALL_POSTS, "posts", all_posts)
        await manager.fetch_or_compute(POST_2, "posts", post_2)

        await invalidator.invalidate_row("posts", 1)

        await manager.fetch_or_compute(ALL_POSTS, "posts", all_posts)
        await manager.fetch_or_compute(POST_2, "posts", post_2)

        assert all_posts.calls == 2
        assert post_2.calls == 1

    @pytest.mark.asyncio
    async def test_insert_requires_table_invalidation(
        self, manager, invalidator, executor_factory
    ) -> None:
        """New rows are picked up once the table is invalidated."""
        execute = executor_factory(_rows(1))
        await manager.fetch_or_compute(ALL_POSTS, "posts", execute)

        execute.rows = _rows(1, 2)
        await invalidator.invalidate_table("posts")

        assert await manager.fetch_or_compute(ALL_POSTS, "posts", execute) == _rows(1, 2)
        assert execute.calls == 2
