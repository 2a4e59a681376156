# tests/integration/cache/test_int_cache_stores.py — v3
"""Integration tests for the cache manager over real backends: SQLite + memory.

No external services required.
Coverage targets: sqlite_store.py, memory_store.py, cache_factory.py, manager.py
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from progcompute.cache.base_cache_store import ENTRIES_TABLE, METADATA_TABLE
from progcompute.cache.manager import CacheManager
from progcompute.cache.models import CacheOptions


def double(x):
    return x * 2


def _options(tmp_path: Path, backend: str = "sqlite", **overrides) -> CacheOptions:
    return CacheOptions(
        backend=backend, db_path=tmp_path / "cache" / "test.db",
        flush_debounce_ms=0, **overrides,
    )


@pytest.fixture(params=["sqlite", "memory"])
def backend(request) -> str:
    return request.param


class TestManagerOverBackends:

    @pytest.mark.asyncio
    async def test_incremental_then_complete(self, tmp_path: Path, backend: str):
        manager = CacheManager(_options(tmp_path, backend))
        assert await manager.initialize()
        items = list(range(30))
        key = manager.generate_key(items, double)

        for index in range(3):
            chunk = items[index * 10:(index + 1) * 10]
            await manager.store_batch(key, [double(x) for x in chunk], index)
        await manager.flush_all()

        partial = await manager.check_cache(key)
        assert partial is not None
        assert not partial.is_complete
        assert partial.data == [double(x) for x in items]
        assert [b.index for b in partial.batches] == [0, 1, 2]

        await manager.mark_complete(key, [double(x) for x in items])
        final = await manager.check_cache(key)
        assert final.is_complete
        await manager.close()

    @pytest.mark.asyncio
    async def test_clear_and_status(self, tmp_path: Path, backend: str):
        manager = CacheManager(_options(tmp_path, backend))
        await manager.initialize()
        key_a = manager.generate_key([1], double)
        key_b = manager.generate_key([2], double)
        await manager.mark_complete(key_a, [2])
        await manager.mark_complete(key_b, [4])

        status = await manager.get_status(key_a)
        assert status.hit and status.size == 2

        await manager.clear_cache(key_a)
        assert not (await manager.get_status(key_a)).hit
        assert await manager.store.count(METADATA_TABLE) == 1

        await manager.clear_cache()
        assert await manager.store.count(ENTRIES_TABLE) == 0
        await manager.close()


class TestSqlitePersistence:

    @pytest.mark.asyncio
    async def test_entry_survives_reopen(self, tmp_path: Path):
        options = _options(tmp_path)
        first = CacheManager(options)
        await first.initialize()
        key = first.generate_key([1, 2, 3], double)
        await first.mark_complete(key, [2, 4, 6])
        await first.close()

        second = CacheManager(options)
        await second.initialize()
        hit = await second.check_cache(second.generate_key([1, 2, 3], double))
        assert hit is not None
        assert hit.data == [2, 4, 6]
        await second.close()

    @pytest.mark.asyncio
    async def test_on_disk_layout(self, tmp_path: Path):
        options = _options(tmp_path)
        manager = CacheManager(options)
        await manager.initialize()
        key = manager.generate_key(["a"], str.upper, transform_id="upper")
        await manager.mark_complete(key, ["A"])
        await manager.close()

        conn = sqlite3.connect(str(options.db_path))
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        row = conn.execute(
            "SELECT data_hash FROM entries WHERE key = ?", (key,)
        ).fetchone()
        conn.close()
        assert {"entries", "metadata"} <= tables
        assert row[0] == key.split("_")[1]

    @pytest.mark.asyncio
    async def test_cleanup_sweep(self, tmp_path: Path):
        manager = CacheManager(_options(tmp_path, max_entries=10))
        await manager.initialize()
        for i in range(15):
            await manager.mark_complete(manager.generate_key([i], double), [i * 2])
        report = await manager.cleanup_expired()
        assert report.evicted == 8
        assert await manager.store.count(ENTRIES_TABLE) == 7
        await manager.close()
