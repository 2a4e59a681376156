# src/cache/sqlite_store.py — v3
"""SQLite-based cache store (CACHE_BACKEND=sqlite).

Uses stdlib sqlite3 — no external dependency. Blocking calls run in a worker
thread behind a lock and are bounded by the operation timeout. The storage
quota is enforced with ``PRAGMA max_page_count`` so a full database raises
SQLITE_FULL, which the classifier maps to STORAGE_QUOTA_EXCEEDED.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from progcompute.cache.base_cache_store import (
    ENTRIES_TABLE,
    METADATA_TABLE,
    TABLES,
    BaseCacheStore,
    StoreOperation,
)
from progcompute.cache.errors import CacheError, CacheErrorType
from progcompute.cache.recovery import ErrorClassifier, classify_cache_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    created_at INTEGER,
    last_accessed INTEGER,
    data_hash TEXT
);
CREATE INDEX IF NOT EXISTS idx_entries_created_at ON entries(created_at);
CREATE INDEX IF NOT EXISTS idx_entries_last_accessed ON entries(last_accessed);
CREATE INDEX IF NOT EXISTS idx_entries_data_hash ON entries(data_hash);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    total_size INTEGER,
    created_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_metadata_total_size ON metadata(total_size);
CREATE INDEX IF NOT EXISTS idx_metadata_created_at ON metadata(created_at);
"""

_UPSERT = {
    ENTRIES_TABLE: (
        "INSERT OR REPLACE INTO entries "
        "(key, data, created_at, last_accessed, data_hash) VALUES (?, ?, ?, ?, ?)"
    ),
    METADATA_TABLE: (
        "INSERT OR REPLACE INTO metadata "
        "(key, data, total_size, created_at) VALUES (?, ?, ?, ?)"
    ),
}


def _index_columns(table: str, value: dict[str, Any]) -> tuple[Any, ...]:
    """Extract indexed columns from a record."""
    if table == ENTRIES_TABLE:
        meta = value.get("metadata") or {}
        return (meta.get("timestamp"), meta.get("lastAccessed"), meta.get("dataHash"))
    return (value.get("totalSize"), value.get("timestamp"))


def _check_table(table: str) -> None:
    if table not in TABLES:
        raise ValueError(f"Unknown table: {table!r}")


def _serialize(table: str, key: str, value: dict[str, Any]) -> tuple[Any, ...]:
    try:
        payload = json.dumps(value, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise CacheError(
            f"Failed to serialize record {key}: {e}",
            CacheErrorType.SERIALIZATION_ERROR,
            e,
        ) from e
    return (key, payload, *_index_columns(table, value))


class SqliteCacheStore(BaseCacheStore):
    """SQLite-backed persistent store with a two-table schema."""

    def __init__(
        self,
        db_path: Path | str,
        max_storage_bytes: int | None = None,
        operation_timeout_ms: float = 5000.0,
        init_timeout_ms: float = 10000.0,
        classifier: ErrorClassifier = classify_cache_error,
    ) -> None:
        self._db_path = Path(db_path).expanduser()
        self._max_storage_bytes = max_storage_bytes
        self._operation_timeout = operation_timeout_ms / 1000
        self._init_timeout = init_timeout_ms / 1000
        self._classifier = classifier
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def is_available(self) -> bool:
        """The directory must exist (or be creatable) and be writable."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Cache directory unavailable %s: %s", self._db_path.parent, e)
            return False
        return self._db_path.parent.is_dir()

    async def open(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = await asyncio.wait_for(
                asyncio.to_thread(self._connect), self._init_timeout
            )
        except asyncio.TimeoutError as e:
            raise CacheError(
                "Database initialization timed out",
                CacheErrorType.TIMEOUT_ERROR,
                e,
            ) from e
        except sqlite3.Error as e:
            raise CacheError(
                f"Failed to open database: {e}",
                CacheErrorType.INITIALIZATION_FAILED,
                e,
            ) from e
        logger.debug("Opened cache database %s", self._db_path)

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(_SCHEMA)
        if self._max_storage_bytes:
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            max_pages = max(1, self._max_storage_bytes // page_size)
            conn.execute(f"PRAGMA max_page_count = {max_pages}")
        return conn

    async def _run(self, op_name: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking call in a worker thread, mapping failures to CacheError."""
        conn = self._conn
        if conn is None:
            raise CacheError(
                "Database is not open", CacheErrorType.INITIALIZATION_FAILED
            )

        def locked() -> T:
            with self._lock:
                return fn(conn, *args)

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(locked), self._operation_timeout
            )
        except asyncio.TimeoutError as e:
            raise CacheError(
                f"{op_name} operation timed out",
                CacheErrorType.TIMEOUT_ERROR,
                e,
            ) from e
        except sqlite3.Error as e:
            raise CacheError(f"{op_name} failed: {e}", self._classifier(e), e) from e

    async def get(self, table: str, key: str) -> dict[str, Any] | None:
        """Retrieve a record; unreadable rows are reported as None."""
        _check_table(table)

        def _get(conn: sqlite3.Connection) -> str | None:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE key = ?", (key,)
            ).fetchone()
            return None if row is None else row[0]

        payload = await self._run("Get", _get)
        if payload is None:
            return None
        try:
            value = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Failed to deserialize %s record %s: %s", table, key, e)
            return None
        if not isinstance(value, dict):
            logger.warning("Unexpected %s record shape for %s", table, key)
            return None
        return value

    async def put(self, table: str, key: str, value: dict[str, Any]) -> None:
        """Store a record (upsert)."""
        _check_table(table)
        row = _serialize(table, key, value)

        def _put(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(_UPSERT[table], row)

        await self._run("Put", _put)

    async def delete(self, table: str, key: str) -> None:
        _check_table(table)

        def _delete(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,))

        await self._run("Delete", _delete)

    async def clear(self, table: str) -> None:
        _check_table(table)

        def _clear(conn: sqlite3.Connection) -> None:
            with conn:
                conn.execute(f"DELETE FROM {table}")

        await self._run("Clear", _clear)

    async def list_keys(self, table: str) -> list[str]:
        _check_table(table)

        def _keys(conn: sqlite3.Connection) -> list[str]:
            return [row[0] for row in conn.execute(f"SELECT key FROM {table}")]

        return await self._run("Keys", _keys)

    async def count(self, table: str) -> int:
        _check_table(table)

        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

        return await self._run("Count", _count)

    async def _apply(self, operations: list[StoreOperation]) -> None:
        statements: list[tuple[str, tuple[Any, ...]]] = []
        for op in operations:
            _check_table(op.table)
            if op.op == "put":
                if op.key is None or op.value is None:
                    raise ValueError(f"Put on {op.table} requires a key and a value")
                statements.append(
                    (_UPSERT[op.table], _serialize(op.table, op.key, op.value))
                )
            elif op.op == "delete":
                statements.append((f"DELETE FROM {op.table} WHERE key = ?", (op.key,)))
            else:
                statements.append((f"DELETE FROM {op.table}", ()))

        def _transaction(conn: sqlite3.Connection) -> None:
            with conn:
                for sql, params in statements:
                    conn.execute(sql, params)

        await self._run("Transaction", _transaction)

    async def estimate_usage(self) -> tuple[int, int] | None:
        """Bytes held by live pages versus the configured quota.

        Deleted rows leave their pages on the freelist; those pages are
        reused by later writes, so they do not count as used.
        """
        if not self._max_storage_bytes:
            return None

        def _usage(conn: sqlite3.Connection) -> int:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            free_pages = conn.execute("PRAGMA freelist_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
            return (page_count - free_pages) * page_size

        used = await self._run("Usage", _usage)
        return used, self._max_storage_bytes

    async def close(self) -> None:
        """Close the database connection."""
        conn, self._conn = self._conn, None
        if conn is None:
            return

        def _close() -> None:
            with self._lock:
                conn.close()

        await asyncio.to_thread(_close)
