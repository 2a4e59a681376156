# tests/unit/api/test_facade.py — v2
"""Tests for api.facade — public entry point."""

from __future__ import annotations

import pytest

from progcompute.api.facade import progressive_map
from progcompute.api.models import ComputeResult
from progcompute.config.settings import Settings
from progcompute.scheduler.models import SchedulerConfig, SchedulerState


def square(x):
    return x * x


class TestProgressiveMap:
    @pytest.mark.asyncio
    async def test_returns_full_result(self):
        config = SchedulerConfig(batch_size=10)
        outcome = await progressive_map(list(range(50)), square, config=config)
        assert isinstance(outcome, ComputeResult)
        assert outcome.succeeded
        assert outcome.result == [x * x for x in range(50)]
        assert outcome.progress == 100
        assert outcome.batches_processed == 5
        assert outcome.cache_key is None
        assert outcome.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_config_from_settings(self):
        settings = Settings(_env_file=None, batch_size=25)
        outcome = await progressive_map(list(range(100)), square, settings=settings)
        assert outcome.batches_processed == 4

    @pytest.mark.asyncio
    async def test_error_reported_as_text(self):
        def broken(x):
            raise KeyError("missing")

        outcome = await progressive_map([1], broken, config=SchedulerConfig())
        assert not outcome.succeeded
        assert outcome.state is SchedulerState.ERRORED
        assert "missing" in outcome.error

    @pytest.mark.asyncio
    async def test_on_update_listener(self):
        updates = []
        await progressive_map(
            list(range(20)), square, config=SchedulerConfig(batch_size=5),
            on_update=updates.append,
        )
        assert updates[-1].state is SchedulerState.COMPLETED

    @pytest.mark.asyncio
    async def test_shared_cache_manager(self, cache_options):
        from progcompute.cache.manager import CacheManager
        from progcompute.cache.memory_store import MemoryCacheStore

        store = MemoryCacheStore()
        config = SchedulerConfig(batch_size=10, cache=True)
        first = await progressive_map(
            list(range(30)), square, config=config,
            cache_manager=CacheManager(cache_options, store=store),
        )
        assert first.cache_key is not None
        assert not first.cache_status.hit

        second = await progressive_map(
            list(range(30)), square, config=config,
            cache_manager=CacheManager(cache_options, store=store),
        )
        assert second.cache_status.hit
        assert second.batches_processed == 0
        assert second.result == first.result

    @pytest.mark.asyncio
    async def test_empty_items(self):
        outcome = await progressive_map([], square, config=SchedulerConfig())
        assert outcome.state is SchedulerState.IDLE
        assert outcome.result == []
