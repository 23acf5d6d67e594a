"""Stored payload format for cached query results.

The value at a query key is UTF-8 JSON:

    {"table": str, "pks": [...], "relations": [...], "created_at": int, "data": [...]}

Payloads larger than the compression threshold are gzip-compressed and
prefixed with the literal marker ``C::``. Decoding checks the marker first.
"""

from __future__ import annotations

import gzip
import time
import zlib
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from operator import methodcaller
from typing import Any

import orjson

from querycache.cache.keys import render_primary_key
from querycache.errors import PayloadDecodeError

COMPRESSION_MARKER = b"C::"

Row = dict[str, Any]
PrimaryKeyExtractor = str | Callable[[Mapping[str, Any]], Any]


@dataclass
class CacheEntry:
    """A cached query result plus the metadata needed to invalidate it."""

    table: str
    pks: list[Any] = field(default_factory=list)
    relations: list[str] = field(default_factory=list)
    data: list[Row] = field(default_factory=list)
    created_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire dictionary."""
        return {
            "table": self.table,
            "pks": self.pks,
            "relations": self.relations,
            "created_at": self.created_at,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        """Deserialize from the wire dictionary.

        Raises PayloadDecodeError if the table name or row data is unusable.
        """
        table = data.get("table")
        if not isinstance(table, str) or not table:
            raise PayloadDecodeError("payload has no table name")

        rows = data.get("data", [])
        if not isinstance(rows, list):
            raise PayloadDecodeError("payload data is not a list")

        pks = data.get("pks") or []
        relations = data.get("relations") or []
        return cls(
            table=table,
            pks=list(pks),
            relations=list(relations),
            data=rows,
            created_at=int(data.get("created_at", 0)),
        )


def extract_primary_keys(
    rows: Iterable[Mapping[str, Any]], extractor: PrimaryKeyExtractor
) -> list[Any]:
    """Deduplicated, non-null primary keys of rows, in first-seen order.

    ``extractor`` is a column name or a callable taking a row. Values that
    render to the same string (``1`` and ``"1"``) count as one key.
    """
    get_key: Callable[[Mapping[str, Any]], Any] = (
        extractor if callable(extractor) else methodcaller("get", extractor)
    )

    seen: set[str] = set()
    pks: list[Any] = []
    for row in rows:
        value = get_key(row)
        if value is None or value == "" or isinstance(value, bool):
            continue
        rendered = render_primary_key(value)
        if rendered in seen:
            continue
        seen.add(rendered)
        # Anything but int/str is stored in its rendered form so the payload
        # rebuilds exactly the row index keys it was registered under
        pks.append(value if isinstance(value, (int, str)) else rendered)
    return pks


class PayloadCodec:
    """Encodes CacheEntry objects to stored bytes and back."""

    def __init__(self, compress_threshold: int = 0, compression_level: int = 6):
        self.compress_threshold = compress_threshold
        self.compression_level = compression_level

    def encode(self, entry: CacheEntry) -> bytes:
        """Serialize an entry, compressing it when over the threshold."""
        raw = orjson.dumps(entry.to_dict(), default=str)

        if self.compress_threshold > 0 and len(raw) >= self.compress_threshold:
            return COMPRESSION_MARKER + gzip.compress(raw, compresslevel=self.compression_level)

        return raw

    def decode(self, payload: bytes | str, key: str | None = None) -> CacheEntry:
        """Parse stored bytes back into an entry.

        Raises PayloadDecodeError on broken compression, invalid JSON or
        missing metadata.
        """
        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        if payload.startswith(COMPRESSION_MARKER):
            try:
                payload = gzip.decompress(payload[len(COMPRESSION_MARKER) :])
            except (OSError, EOFError, zlib.error) as e:
                raise PayloadDecodeError(f"cannot decompress payload: {e}", key=key) from e

        try:
            parsed = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise PayloadDecodeError(f"payload is not valid JSON: {e}", key=key) from e

        if not isinstance(parsed, dict):
            raise PayloadDecodeError("payload is not a JSON object", key=key)

        try:
            return CacheEntry.from_dict(parsed)
        except PayloadDecodeError as e:
            e.key = key
            raise
        except (TypeError, ValueError) as e:
            raise PayloadDecodeError(f"payload metadata is malformed: {e}", key=key) from e
