"""Exception hierarchy for querycache.

Store-facing failures are split into connection and command errors so that
callers running in strict mode can tell an unreachable server from a single
failed operation. Decode errors are raised for unreadable payloads and are
never fatal during invalidation.
"""

from __future__ import annotations


class QueryCacheError(Exception):
    """Base class for all querycache errors."""


class ConfigurationError(QueryCacheError):
    """Raised when the cache is wired or configured incorrectly."""


class CacheStoreError(QueryCacheError):
    """Base class for failures talking to the key-value store."""

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class CacheConnectionError(CacheStoreError):
    """The store could not be reached (refused, reset or timed out)."""


class CacheCommandError(CacheStoreError):
    """The store was reachable but a specific command failed."""


class PayloadDecodeError(QueryCacheError):
    """A stored payload could not be decompressed or parsed."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)
