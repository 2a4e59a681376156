# tests/unit/cache/test_cache_factory.py — v4
"""Tests for cache/cache_factory.py."""

from __future__ import annotations

import pytest

from progcompute.cache.cache_factory import create_cache_store
from progcompute.cache.memory_store import MemoryCacheStore
from progcompute.cache.models import CacheOptions
from progcompute.cache.sqlite_store import SqliteCacheStore


class TestCreateCacheStore:
    def test_default_sqlite(self):
        store = create_cache_store()
        assert isinstance(store, SqliteCacheStore)

    def test_sqlite_uses_db_path(self, tmp_path):
        options = CacheOptions(db_path=tmp_path / "x.db")
        store = create_cache_store(options)
        assert isinstance(store, SqliteCacheStore)
        assert store.db_path == tmp_path / "x.db"

    def test_memory_backend(self):
        store = create_cache_store(CacheOptions(backend="memory"))
        assert isinstance(store, MemoryCacheStore)

    def test_unsupported_backend(self):
        options = CacheOptions.model_construct(backend="redis")
        with pytest.raises(ValueError, match="Unsupported cache backend"):
            create_cache_store(options)
