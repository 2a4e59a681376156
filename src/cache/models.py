# src/cache/models.py — v2
"""Cache domain models: persisted record, lookup result, status, options.

The persisted record keeps camelCase field names on disk so entries written
by other versions stay readable. Python code uses snake_case attributes;
serialize with ``model_dump(by_alias=True)``.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from progcompute.config.settings import Settings

CACHE_VERSION = "1.0.0"


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds (the persisted time unit)."""
    return int(time.time() * 1000)


class CacheMetadata(BaseModel):
    """Bookkeeping stored alongside each entry and in the metadata table."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: int
    last_accessed: int = Field(alias="lastAccessed")
    data_hash: str = Field(alias="dataHash")
    transform_hash: str = Field(alias="transformHash")
    total_size: int = Field(default=0, alias="totalSize")
    batch_size: int = Field(default=0, alias="batchSize")


class CacheBatch(BaseModel):
    """One persisted batch of transformed items."""

    index: int
    data: list[Any]
    timestamp: int
    size: int = 0


class CacheEntry(BaseModel):
    """Persisted cache record, one per fingerprint."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    data: list[Any]
    metadata: CacheMetadata
    batches: list[CacheBatch] = Field(default_factory=list)
    is_complete: bool = Field(default=False, alias="isComplete")
    version: str

    def to_record(self) -> dict[str, Any]:
        """Serialize to the on-disk layout."""
        return self.model_dump(by_alias=True)

    def metadata_record(self) -> dict[str, Any]:
        """Row for the metadata table."""
        record = self.metadata.model_dump(by_alias=True)
        record["key"] = self.key
        return record


class CacheResult(BaseModel):
    """Result of a successful cache lookup."""

    data: list[Any]
    is_complete: bool
    timestamp: int
    batches: list[CacheBatch] = Field(default_factory=list)


class CacheStatus(BaseModel):
    """Caller-facing cache status."""

    enabled: bool = False
    hit: bool = False
    size: int = 0
    last_updated: datetime | None = None

    @classmethod
    def from_epoch_ms(
        cls, enabled: bool, hit: bool, size: int, epoch_ms: int | None
    ) -> CacheStatus:
        last_updated = None
        if epoch_ms is not None:
            last_updated = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
        return cls(enabled=enabled, hit=hit, size=size, last_updated=last_updated)


class CacheOptions(BaseModel):
    """Cache manager options."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: Path = Path("~/.progcompute/cache/ProgressiveComputeCache.db")
    store_name: str = "cache_entries"
    schema_version: str = CACHE_VERSION
    max_age_ms: int = Field(default=24 * 60 * 60 * 1000, gt=0)
    max_entries: int = Field(default=100, ge=1)
    max_storage_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    flush_debounce_ms: float = Field(default=50.0, ge=0)
    operation_timeout_ms: float = Field(default=5000.0, gt=0)
    init_timeout_ms: float = Field(default=10000.0, gt=0)
    dedupe_batches: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheOptions:
        return cls(
            backend=settings.cache_backend,
            db_path=settings.cache_db_path,
            store_name=settings.cache_store_name,
            schema_version=settings.cache_schema_version,
            max_age_ms=settings.cache_max_age_ms,
            max_entries=settings.cache_max_entries,
            max_storage_bytes=settings.cache_max_storage_bytes,
            flush_debounce_ms=settings.cache_flush_debounce_ms,
            operation_timeout_ms=settings.cache_operation_timeout_ms,
            init_timeout_ms=settings.cache_init_timeout_ms,
            dedupe_batches=settings.cache_dedupe_batches,
        )
