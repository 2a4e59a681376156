# src/cache/memory_store.py — v2
"""In-process cache store (CACHE_BACKEND=memory).

Records are kept as serialized JSON strings so the store behaves like a
durable backend: values are copied on the way in and out, unserializable
records fail, and an optional byte quota raises STORAGE_QUOTA_EXCEEDED.
Nothing survives the process.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from progcompute.cache.base_cache_store import TABLES, BaseCacheStore, StoreOperation
from progcompute.cache.errors import CacheError, CacheErrorType

logger = logging.getLogger(__name__)


class MemoryCacheStore(BaseCacheStore):
    """Dict-backed store; handy for tests and ephemeral runs."""

    def __init__(self, quota_bytes: int | None = None, available: bool = True) -> None:
        self._quota_bytes = quota_bytes
        self._available = available
        self._tables: dict[str, dict[str, str]] = {}
        self._opened = False

    async def is_available(self) -> bool:
        return self._available

    async def open(self) -> None:
        if not self._available:
            raise CacheError(
                "Memory store not available", CacheErrorType.INITIALIZATION_FAILED
            )
        for table in TABLES:
            self._tables.setdefault(table, {})
        self._opened = True

    def _table(self, table: str) -> dict[str, str]:
        if not self._opened:
            raise CacheError("Store is not open", CacheErrorType.INITIALIZATION_FAILED)
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table!r}")
        return self._tables[table]

    def _used_bytes(self) -> int:
        return sum(len(v) for rows in self._tables.values() for v in rows.values())

    @staticmethod
    def _encode(key: str, value: dict[str, Any]) -> str:
        try:
            return json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise CacheError(
                f"Failed to serialize record {key}: {e}",
                CacheErrorType.SERIALIZATION_ERROR,
                e,
            ) from e

    def _check_quota(self, growth: int) -> None:
        if self._quota_bytes is not None and self._used_bytes() + growth > self._quota_bytes:
            raise CacheError(
                "Storage quota exceeded", CacheErrorType.STORAGE_QUOTA_EXCEEDED
            )

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        payload = self._table(table).get(key)
        if payload is None:
            return None
        try:
            value = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Failed to deserialize %s record %s: %s", table, key, e)
            return None
        return value if isinstance(value, dict) else None

    async def put(self, table: str, key: str, value: dict[str, Any]) -> None:
        rows = self._table(table)
        payload = self._encode(key, value)
        self._check_quota(len(payload) - len(rows.get(key, "")))
        rows[key] = payload

    async def delete(self, table: str, key: str) -> None:
        self._table(table).pop(key, None)

    async def clear(self, table: str) -> None:
        self._table(table).clear()

    async def list_keys(self, table: str) -> list[str]:
        return list(self._table(table))

    async def count(self, table: str) -> int:
        return len(self._table(table))

    async def _apply(self, operations: list[StoreOperation]) -> None:
        # Stage on copies so a failing operation leaves the store untouched.
        staged = {name: dict(self._table(name)) for name in TABLES}
        for op in operations:
            if op.table not in TABLES:
                raise ValueError(f"Unknown table: {op.table!r}")
            rows = staged[op.table]
            if op.op == "put":
                if op.key is None or op.value is None:
                    raise ValueError(f"Put on {op.table} requires a key and a value")
                rows[op.key] = self._encode(op.key, op.value)
            elif op.op == "delete":
                rows.pop(op.key or "", None)
            else:
                rows.clear()
        if self._quota_bytes is not None:
            used = sum(len(v) for rows in staged.values() for v in rows.values())
            # only growth can exceed the quota; deletions always go through
            if used > self._quota_bytes and used > self._used_bytes():
                raise CacheError(
                    "Storage quota exceeded", CacheErrorType.STORAGE_QUOTA_EXCEEDED
                )
        self._tables = staged

    async def estimate_usage(self) -> tuple[int, int] | None:
        if self._quota_bytes is None:
            return None
        return self._used_bytes(), self._quota_bytes

    async def close(self) -> None:
        self._opened = False
