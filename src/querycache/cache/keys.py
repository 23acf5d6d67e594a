"""Cache key schema for querycache.

Key formats (all under a configurable prefix):
- {prefix}:query:{hash}                         cached query result
- {prefix}:index:table:{table}                  set of query keys for a table
- {prefix}:rowindex:table:{table}:pk:{pk}       set of query keys for one row
- {prefix}:metrics:{name}                       hit/miss counters

The same KeyGenerator must be used to register index entries on write and to
rebuild them on invalidation; any divergence leaves dangling index members.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import orjson

DEFAULT_PREFIX = "querycache"
DEFAULT_HASH_ALGO = "md5"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")

# orjson serializes integers natively only within 64 bits
_INT_MIN = -(2**63)
_INT_MAX = 2**64 - 1


def _sort_key(value: Any) -> bytes:
    return orjson.dumps(value)


def canonical_value(value: Any) -> Any:
    """JSON-safe form of a bound value for key derivation.

    JSON scalars pass through. Every other value becomes a ``[type, value]``
    pair, so ``Decimal("1")`` and ``"1"`` stay distinct. Sets and mappings
    are sorted so their form never depends on hash order.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else ["float", str(value)]
    if isinstance(value, int):
        if _INT_MIN <= value <= _INT_MAX:
            return value
        return ["int", str(value)]
    if isinstance(value, (list, tuple)):
        return ["list", [canonical_value(item) for item in value]]
    if isinstance(value, (set, frozenset)):
        return ["set", sorted((canonical_value(item) for item in value), key=_sort_key)]
    if isinstance(value, Mapping):
        items = [[canonical_value(k), canonical_value(v)] for k, v in value.items()]
        return ["map", sorted(items, key=_sort_key)]
    if isinstance(value, bytes):
        return ["bytes", value.hex()]
    return [type(value).__name__, str(value)]


@dataclass(frozen=True)
class QueryDescriptor:
    """Structural description of a query used for key derivation.

    statement is the normalized statement text, parameters the bound values
    in call order and relations the names of eager-loaded relations. The
    relation set is unordered so that declaration order at the call site
    never changes the key.
    """

    statement: str
    parameters: tuple[Any, ...] = ()
    relations: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        # Accept lists/sets from callers but keep the dataclass hashable
        if not isinstance(self.parameters, tuple):
            object.__setattr__(self, "parameters", tuple(self.parameters))
        if not isinstance(self.relations, frozenset):
            object.__setattr__(self, "relations", frozenset(self.relations))

    def canonical(self) -> bytes:
        """Stable byte serialization of the descriptor."""
        return orjson.dumps(
            {
                "sql": self.statement,
                "bindings": canonical_value(self.parameters),
                "relations": sorted(self.relations),
            }
        )


def render_primary_key(primary_key: Any) -> str:
    """Render a primary key the way it appears inside row index keys.

    Integers and their string form render identically, so ``123`` and
    ``"123"`` address the same row index.
    """
    if isinstance(primary_key, bool):
        raise TypeError("boolean values are not valid primary keys")
    if isinstance(primary_key, bytes):
        return primary_key.decode("utf-8")
    if isinstance(primary_key, float) and primary_key.is_integer():
        return str(int(primary_key))
    return str(primary_key)


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters in a literal key fragment."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class KeyGenerator:
    """Deterministic key generator for query entries, indexes and metrics."""

    def __init__(self, prefix: str = DEFAULT_PREFIX, hash_algo: str = DEFAULT_HASH_ALGO):
        self.prefix = prefix
        self.hash_algo = hash_algo
        # Fail at construction rather than on the first query
        hashlib.new(hash_algo)

    def query_key(self, query: QueryDescriptor) -> str:
        """Key for a cached query result."""
        digest = hashlib.new(self.hash_algo, query.canonical()).hexdigest()
        return f"{self.prefix}:query:{digest}"

    def table_index_key(self, table: str) -> str:
        """Key for the set of query keys depending on a table."""
        return f"{self.prefix}:index:table:{table}"

    def row_index_key(self, table: str, primary_key: Any) -> str:
        """Key for the set of query keys whose result includes one row."""
        return f"{self.prefix}:rowindex:table:{table}:pk:{render_primary_key(primary_key)}"

    def row_index_pattern(self, table: str) -> str:
        """Pattern matching every row index of a table.

        Use with SCAN + DEL when a whole table is invalidated.
        """
        return f"{escape_glob(self.prefix)}:rowindex:table:{escape_glob(table)}:pk:*"

    def metrics_key(self, name: str) -> str:
        """Key for a metrics counter."""
        return f"{self.prefix}:metrics:{name}"

    def namespace_pattern(self) -> str:
        """Pattern matching every key owned by this prefix."""
        return f"{escape_glob(self.prefix)}:*"

    def parse_key(self, key: str) -> dict[str, str] | None:
        """Parse a key into prefix, kind and the remainder.

        For diagnostics only. Returns None if the key is not under this
        generator's prefix.
        """
        head = f"{self.prefix}:"
        if not key.startswith(head):
            return None

        kind, _, rest = key[len(head) :].partition(":")
        if not kind:
            return None

        return {
            "prefix": self.prefix,
            "kind": kind,
            "hash": rest,
        }
