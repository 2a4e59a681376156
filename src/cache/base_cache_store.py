# src/cache/base_cache_store.py — v2
"""Abstract persistent store interface.

Two logical tables share one store:

- ``entries``: full cache records keyed by fingerprint, indexed on
  creation time, last-access time and input hash.
- ``metadata``: per-fingerprint bookkeeping rows, indexed on total size and
  creation time.

Values are JSON-compatible dicts. Implementations raise ``CacheError`` for
every failure so callers can route it through the recovery strategy.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

ENTRIES_TABLE = "entries"
METADATA_TABLE = "metadata"
TABLES = (ENTRIES_TABLE, METADATA_TABLE)


@dataclass
class StoreOperation:
    """A write buffered inside a transaction scope."""

    op: Literal["put", "delete", "clear"]
    table: str
    key: str | None = None
    value: dict[str, Any] | None = None


@dataclass
class StoreTransaction:
    """Write buffer applied atomically when the transaction scope exits."""

    operations: list[StoreOperation] = field(default_factory=list)

    def put(self, table: str, key: str, value: dict[str, Any]) -> None:
        self.operations.append(StoreOperation("put", table, key, value))

    def delete(self, table: str, key: str) -> None:
        self.operations.append(StoreOperation("delete", table, key))

    def clear(self, table: str) -> None:
        self.operations.append(StoreOperation("clear", table))


class BaseCacheStore(ABC):
    """Unified interface for persistent cache backends."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Probe whether the backend can be used in this environment."""

    @abstractmethod
    async def open(self) -> None:
        """Open the store and create the schema if missing."""

    @abstractmethod
    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Retrieve a record, None if absent or unreadable."""

    @abstractmethod
    async def put(self, table: str, key: str, value: dict[str, Any]) -> None:
        """Insert or replace a record."""

    @abstractmethod
    async def delete(self, table: str, key: str) -> None:
        """Remove a record (no error if absent)."""

    @abstractmethod
    async def clear(self, table: str) -> None:
        """Remove every record of a table."""

    @abstractmethod
    async def list_keys(self, table: str) -> list[str]:
        """List all keys of a table."""

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records of a table."""

    @abstractmethod
    async def _apply(self, operations: list[StoreOperation]) -> None:
        """Apply buffered writes atomically."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Transactional scope: writes are applied together on clean exit.

        Usage::

            async with store.transaction() as tx:
                tx.put(ENTRIES_TABLE, key, record)
                tx.put(METADATA_TABLE, key, meta)
        """
        tx = StoreTransaction()
        yield tx
        if tx.operations:
            await self._apply(tx.operations)

    async def estimate_usage(self) -> tuple[int, int] | None:
        """Return (used_bytes, quota_bytes) when the backend can tell."""
        return None

    async def close(self) -> None:
        """Release backend resources."""
