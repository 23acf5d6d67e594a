from __future__ import annotations

import hashlib
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_GLOB_CHARS = frozenset("*?[]\\")


class CacheSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QUERYCACHE_", env_file=".env", extra="ignore")

    # Master switch; when off every query goes straight to the data source
    enabled: bool = True

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    socket_timeout: float = Field(default=1.0, gt=0)

    # Key namespace
    prefix: str = "querycache"
    hash_algo: str = "md5"

    # Entries
    default_ttl: int = 3600  # 1 hour
    compress_threshold: int = Field(default=10240, ge=0)  # 10KB, 0 disables
    compression_level: int = Field(default=6, ge=1, le=9)

    # Failure policy: strict surfaces store errors, lenient logs and bypasses
    strict_mode: bool = False

    # Hit/miss counters kept in the store
    store_metrics: bool = True

    # Keys per DEL when deleting by pattern
    scan_batch_size: int = Field(default=500, gt=0)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("prefix must not be empty")
        if _GLOB_CHARS.intersection(value):
            raise ValueError("prefix must not contain glob characters")
        return value

    @field_validator("hash_algo")
    @classmethod
    def _check_hash_algo(cls, value: str) -> str:
        value = value.lower()
        if value not in hashlib.algorithms_available:
            raise ValueError(f"unsupported hash algorithm: {value}")
        if value.startswith("shake_"):
            raise ValueError("variable-length digests are not supported")
        return value

    @field_validator("default_ttl")
    @classmethod
    def _clamp_ttl(cls, value: int) -> int:
        return max(0, value)


def load_settings(**overrides: Any) -> CacheSettings:
    """Build settings from the environment, with explicit overrides on top."""
    return CacheSettings(**overrides)
