# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides in-memory cache stores, cache managers with a recording sleep,
and scheduler configurations. No real waits: retry delays are captured,
debounced flushes are forced with ``flush_all()``.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from progcompute.cache.manager import CacheManager
from progcompute.cache.memory_store import MemoryCacheStore
from progcompute.cache.models import CacheOptions
from progcompute.cache.recovery import ErrorRecoveryStrategy
from progcompute.scheduler.models import SchedulerConfig


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays (seconds)."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def delays_ms(self) -> list[float]:
        return [round(s * 1000) for s in self.calls]


# === FIXTURES: Cache ===


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def recovery(recording_sleep: RecordingSleep) -> ErrorRecoveryStrategy:
    return ErrorRecoveryStrategy(sleep=recording_sleep)


@pytest.fixture
def cache_options(tmp_path: Path) -> CacheOptions:
    """Memory backend, no debounce window."""
    return CacheOptions(
        backend="memory",
        db_path=tmp_path / "cache.db",
        flush_debounce_ms=0,
    )


@pytest.fixture
def memory_store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture
def cache_manager(
    cache_options: CacheOptions,
    memory_store: MemoryCacheStore,
    recovery: ErrorRecoveryStrategy,
) -> CacheManager:
    """Uninitialized manager over a memory store."""
    return CacheManager(cache_options, store=memory_store, recovery=recovery)


# === FIXTURES: Scheduler ===


@pytest.fixture
def small_config() -> SchedulerConfig:
    return SchedulerConfig(batch_size=10, slice_budget_ms=1000, delivery_interval_ms=0)


@pytest.fixture
def sample_items() -> list[int]:
    return list(range(100))
