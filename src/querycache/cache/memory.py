"""In-process CacheStore for single-instance deployments and tests.

Mirrors the Redis semantics the cache relies on: string and set values,
lazy TTL expiry, glob SCAN and the atomic-delete script. Scripts run
without awaiting, so they are indivisible with respect to other tasks on
the event loop.

For anything shared between processes, use RedisStore instead.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any

from querycache.cache.scripts import ATOMIC_DELETE_SCRIPT
from querycache.cache.store import CacheStore, PipelineOp
from querycache.errors import CacheCommandError

ScriptHandler = Callable[[Sequence[str], Sequence[Any]], Any]


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a Redis glob pattern (``*``, ``?``, ``[...]``, ``\\x``)."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
            else:
                body = pattern[i + 1 : end]
                negate = body.startswith("^")
                if negate:
                    body = body[1:]
                # Ranges like a-z keep their dash
                body = "".join(c if c == "-" else re.escape(c) for c in body)
                if negate:
                    body = "^" + body
                parts.append(f"[{body}]")
                i = end
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts), re.DOTALL)


class MemoryStore(CacheStore):
    """Dictionary-backed CacheStore with Redis-like behaviour."""

    def __init__(self) -> None:
        self._data: dict[str, bytes | set[str]] = {}
        self._expires: dict[str, float] = {}
        self._scripts: dict[str, ScriptHandler] = {
            ATOMIC_DELETE_SCRIPT: self._atomic_delete,
        }
        self.commands_processed = 0

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _string(self, key: str) -> bytes | None:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, bytes):
            raise CacheCommandError(
                "WRONGTYPE Operation against a key holding the wrong kind of value"
            )
        return value

    def _set_value(self, key: str) -> set[str] | None:
        if not self._alive(key):
            return None
        value = self._data[key]
        if not isinstance(value, set):
            raise CacheCommandError(
                "WRONGTYPE Operation against a key holding the wrong kind of value"
            )
        return value

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expires.pop(key, None)
                removed += 1
        return removed

    def _atomic_delete(self, keys: Sequence[str], args: Sequence[Any]) -> int:
        query_key, *index_keys = keys
        removed = self._delete(query_key)
        for index_key in index_keys:
            members = self._set_value(index_key)
            if members is not None:
                members.discard(query_key)
                if not members:
                    self._delete(index_key)
        return removed

    def _execute(self, op: PipelineOp) -> Any:
        if op.command == "get":
            return self._string(*op.args)
        if op.command == "set":
            key, value = op.args
            return self._set(key, value, op.kwargs.get("ex"))
        if op.command == "delete":
            return self._delete(*op.args)
        if op.command == "sadd":
            return self._sadd(*op.args)
        if op.command == "srem":
            return self._srem(*op.args)
        return self._incr(*op.args)

    def _set(self, key: str, value: bytes, ttl: int | None) -> bool:
        self._data[key] = bytes(value)
        if ttl is not None and ttl > 0:
            self._expires[key] = time.monotonic() + ttl
        else:
            self._expires.pop(key, None)
        return True

    def _sadd(self, key: str, *members: str) -> int:
        target = self._set_value(key)
        if target is None:
            target = self._data[key] = set()
        before = len(target)
        target.update(members)
        return len(target) - before

    def _srem(self, key: str, *members: str) -> int:
        target = self._set_value(key)
        if target is None:
            return 0
        removed = len(target.intersection(members))
        target.difference_update(members)
        if not target:
            self._delete(key)
        return removed

    def _incr(self, key: str) -> int:
        current = self._string(key)
        try:
            value = int(current or b"0") + 1
        except ValueError as e:
            raise CacheCommandError("ERR value is not an integer or out of range") from e
        self._data[key] = str(value).encode()
        return value

    # -------------------------------------------------------------------------
    # CacheStore interface
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        self.commands_processed += 1
        return self._string(key)

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        self.commands_processed += 1
        return self._set(key, value, ttl)

    async def delete(self, *keys: str) -> int:
        self.commands_processed += 1
        return self._delete(*keys)

    async def sadd(self, key: str, *members: str) -> int:
        self.commands_processed += 1
        return self._sadd(key, *members)

    async def smembers(self, key: str) -> set[str]:
        self.commands_processed += 1
        return set(self._set_value(key) or ())

    async def srem(self, key: str, *members: str) -> int:
        self.commands_processed += 1
        return self._srem(key, *members)

    async def incr(self, key: str) -> int:
        self.commands_processed += 1
        return self._incr(key)

    async def scan(self, pattern: str, count: int = 500) -> AsyncIterator[str]:
        matcher = glob_to_regex(pattern)
        # Snapshot like a cursor: keys added mid-scan may or may not appear
        snapshot = list(self._data)
        for start in range(0, len(snapshot), count):
            self.commands_processed += 1
            for key in snapshot[start : start + count]:
                if self._alive(key) and matcher.fullmatch(key):
                    yield key
            await asyncio.sleep(0)

    async def run_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any] = ()
    ) -> Any:
        self.commands_processed += 1
        handler = self._scripts.get(script)
        if handler is None:
            raise CacheCommandError("NOSCRIPT No matching script")
        return handler(keys, args)

    async def info(self, section: str | None = None) -> dict[str, Any]:
        self.commands_processed += 1
        live = [key for key in list(self._data) if self._alive(key)]
        keyspace = {"db0": {"keys": len(live), "expires": len(self._expires), "avg_ttl": 0}}
        if section in (None, "keyspace"):
            return keyspace if live else {}
        if section == "stats":
            return {"total_commands_processed": self.commands_processed}
        return {}

    async def pipeline(self, operations: Sequence[PipelineOp]) -> list[Any]:
        self.commands_processed += 1
        return [self._execute(op) for op in operations]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def keys(self) -> list[str]:
        """All live keys."""
        return [key for key in list(self._data) if self._alive(key)]

    def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 without expiry, -2 if absent."""
        if not self._alive(key):
            return -2
        deadline = self._expires.get(key)
        if deadline is None:
            return -1
        return max(0, round(deadline - time.monotonic()))
