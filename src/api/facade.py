# src/api/facade.py — v2
"""Public API facade — single entry point for a progressive computation.

Usage:
    from progcompute.api.facade import progressive_map
    outcome = await progressive_map(items, transform)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from progcompute.api.models import ComputeResult
from progcompute.config.settings import Settings
from progcompute.scheduler.models import ComputeState, SchedulerConfig
from progcompute.scheduler.scheduler import Scheduler

if TYPE_CHECKING:
    from progcompute.cache.manager import CacheManager
    from progcompute.scheduler.models import IdleNotifier

logger = logging.getLogger(__name__)


async def progressive_map(
    items: Sequence[Any],
    transform: Callable[[Any], Any],
    settings: Settings | None = None,
    config: SchedulerConfig | None = None,
    transform_id: str | None = None,
    cache_manager: CacheManager | None = None,
    on_update: Callable[[ComputeState], Any] | None = None,
    idle_notifier: IdleNotifier | None = None,
) -> ComputeResult:
    """Transform ``items`` in time slices and return the full result.

    Args:
        items: Input collection.
        transform: Per-item function.
        settings: Global settings. Loaded from .env if None; ignored when
            ``config`` is given.
        config: Explicit scheduler configuration.
        transform_id: Stable identity for the transform, used in the cache
            fingerprint instead of its source text.
        cache_manager: Shared cache manager, left open for the caller. None =
            created from config and closed on return.
        on_update: Listener receiving each state snapshot.
        idle_notifier: Continuation hook for slices.

    Returns:
        ComputeResult with the result list, final state and cache status.
    """
    if config is None:
        config = SchedulerConfig.from_settings(settings or Settings())

    started = time.perf_counter()
    scheduler = Scheduler(config, cache_manager=cache_manager, idle_notifier=idle_notifier)
    if on_update is not None:
        scheduler.add_listener(on_update)

    async with scheduler:
        state = await scheduler.run(items, transform, transform_id)
        outcome = ComputeResult(
            result=state.result,
            state=state.state,
            progress=state.progress,
            error=str(state.error) if state.error is not None else None,
            cache_key=scheduler.cache_key,
            cache_status=state.cache_status,
            batches_processed=scheduler.batches_processed,
            duration_seconds=time.perf_counter() - started,
        )

    logger.info(
        "progressive_map finished: state=%s, items=%d, cache_hit=%s",
        outcome.state.value, len(outcome.result), outcome.cache_status.hit,
    )
    return outcome
