"""Key-value store interface and the Redis implementation.

The cache core only talks to a CacheStore. RedisStore wraps the redis-py
async client and translates driver exceptions into querycache errors:
- CacheConnectionError for refused/reset connections and timeouts
- CacheCommandError for any other failed command

Each call borrows a connection from the client's pool for the duration of a
single command, pipeline or script and returns it afterwards.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, cast

import redis.asyncio as redis
from redis import exceptions as redis_errors

from querycache.errors import CacheCommandError, CacheConnectionError

if TYPE_CHECKING:
    from redis.asyncio import Redis

PIPELINE_COMMANDS = frozenset({"get", "set", "delete", "sadd", "srem", "incr"})


@dataclass(frozen=True)
class PipelineOp:
    """One command queued in a pipeline."""

    command: str
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.command not in PIPELINE_COMMANDS:
            raise ValueError(f"unsupported pipeline command: {self.command}")

    @classmethod
    def set(cls, key: str, value: bytes, ttl: int | None = None) -> "PipelineOp":
        """SET, with an expiry when ttl is positive."""
        if ttl is not None and ttl > 0:
            return cls("set", (key, value), {"ex": ttl})
        return cls("set", (key, value))

    @classmethod
    def sadd(cls, key: str, *members: str) -> "PipelineOp":
        """SADD."""
        return cls("sadd", (key, *members))


class CacheStore(ABC):
    """Abstract key-value store consumed by the cache core."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Get a value, or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        """Set a value. ttl of None or 0 means no expiry."""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    async def sadd(self, key: str, *members: str) -> int:
        """Add members to a set, returning how many were new."""

    @abstractmethod
    async def smembers(self, key: str) -> set[str]:
        """All members of a set (empty if absent)."""

    @abstractmethod
    async def srem(self, key: str, *members: str) -> int:
        """Remove members from a set, returning how many were removed."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Increment an integer counter, returning the new value."""

    @abstractmethod
    def scan(self, pattern: str, count: int = 500) -> AsyncIterator[str]:
        """Lazily iterate keys matching a glob pattern.

        Must use cursor-based iteration that never blocks the server.
        Iteration can only be restarted from the beginning.
        """

    @abstractmethod
    async def run_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any] = ()
    ) -> Any:
        """Run a script atomically on the server."""

    @abstractmethod
    async def info(self, section: str | None = None) -> dict[str, Any]:
        """Server information for a section."""

    @abstractmethod
    async def pipeline(self, operations: Sequence[PipelineOp]) -> list[Any]:
        """Send a batch of commands in one round trip.

        Not transactional: commands may partially apply.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map redis-py exceptions onto querycache store errors."""
    try:
        yield
    except (redis_errors.ConnectionError, redis_errors.TimeoutError, OSError) as e:
        raise CacheConnectionError(f"{operation} failed: {e}", operation=operation) from e
    except redis_errors.RedisError as e:
        raise CacheCommandError(f"{operation} failed: {e}", operation=operation) from e


def _to_str(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisStore(CacheStore):
    """CacheStore backed by a redis-py asyncio client."""

    def __init__(self, client: Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 1.0) -> "RedisStore":
        """Create a store with its own connection pool.

        Both connect and command timeouts are enforced so no call can block
        indefinitely.
        """
        client = redis.from_url(  # type: ignore[no-untyped-call]
            url,
            decode_responses=False,  # Payloads are bytes
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def get(self, key: str) -> bytes | None:
        with _translate_errors("GET"):
            return cast(bytes | None, await self.client.get(key))

    async def set(self, key: str, value: bytes, ttl: int | None = None) -> bool:
        with _translate_errors("SET"):
            if ttl is not None and ttl > 0:
                return bool(await self.client.set(key, value, ex=ttl))
            return bool(await self.client.set(key, value))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("DEL"):
            return cast(int, await self.client.delete(*keys))

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("SADD"):
            return cast(int, await cast(Awaitable[int], self.client.sadd(key, *members)))

    async def smembers(self, key: str) -> set[str]:
        with _translate_errors("SMEMBERS"):
            members = await cast(Awaitable[set[bytes]], self.client.smembers(key))
        return {_to_str(m) for m in members}

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("SREM"):
            return cast(int, await cast(Awaitable[int], self.client.srem(key, *members)))

    async def incr(self, key: str) -> int:
        with _translate_errors("INCR"):
            return cast(int, await self.client.incr(key))

    async def scan(self, pattern: str, count: int = 500) -> AsyncIterator[str]:
        # Use SCAN to avoid blocking on large keyspaces
        with _translate_errors("SCAN"):
            async for key in self.client.scan_iter(match=pattern, count=count):
                yield _to_str(key)

    async def run_script(
        self, script: str, keys: Sequence[str], args: Sequence[Any] = ()
    ) -> Any:
        with _translate_errors("EVAL"):
            return await cast(
                Awaitable[Any],
                self.client.eval(script, len(keys), *keys, *args),
            )

    async def info(self, section: str | None = None) -> dict[str, Any]:
        with _translate_errors("INFO"):
            if section is None:
                return cast(dict[str, Any], await self.client.info())
            return cast(dict[str, Any], await self.client.info(section))

    async def pipeline(self, operations: Sequence[PipelineOp]) -> list[Any]:
        if not operations:
            return []
        with _translate_errors("PIPELINE"):
            async with self.client.pipeline(transaction=False) as pipe:
                for op in operations:
                    getattr(pipe, op.command)(*op.args, **op.kwargs)
                return cast(list[Any], await pipe.execute())

    async def ping(self) -> bool:
        with _translate_errors("PING"):
            return bool(await cast(Awaitable[bool], self.client.ping()))

    async def close(self) -> None:
        await self.client.aclose()
