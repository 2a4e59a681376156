# src/cache/cache_factory.py — v3
"""Factory for cache store instantiation."""

from __future__ import annotations

from progcompute.cache.base_cache_store import BaseCacheStore
from progcompute.cache.models import CacheOptions


def create_cache_store(options: CacheOptions | None = None) -> BaseCacheStore:
    """Instantiate the configured cache backend.

    Args:
        options: Cache options. Defaults to the sqlite backend at the
            default location.

    Returns:
        Configured BaseCacheStore implementation.
    """
    options = options or CacheOptions()

    if options.backend == "sqlite":
        from progcompute.cache.sqlite_store import SqliteCacheStore
        return SqliteCacheStore(
            db_path=options.db_path,
            max_storage_bytes=options.max_storage_bytes,
            operation_timeout_ms=options.operation_timeout_ms,
            init_timeout_ms=options.init_timeout_ms,
        )

    if options.backend == "memory":
        from progcompute.cache.memory_store import MemoryCacheStore
        return MemoryCacheStore(quota_bytes=options.max_storage_bytes)

    raise ValueError(f"Unsupported cache backend: {options.backend!r}")
