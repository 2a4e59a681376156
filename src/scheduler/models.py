# src/scheduler/models.py — v1
"""Scheduler configuration, run states and the observable state snapshot."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from progcompute.cache.models import CacheOptions, CacheStatus
from progcompute.config.settings import MAX_BATCH_SIZE, MIN_BATCH_SIZE

if TYPE_CHECKING:
    from progcompute.config.settings import Settings

# Delivery intervals at or below one frame are queued for the next loop tick.
FRAME_INTERVAL_MS = 16.0

# (callback, timeout_s) -> cancel function. The notifier must invoke the
# callback once the loop is idle, and no later than timeout_s.
IdleNotifier = Callable[[Callable[[], None], float], Callable[[], None]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ERRORED = "errored"


class SchedulerConfig(BaseModel):
    """Per-scheduler configuration."""

    batch_size: int = Field(default=500, ge=MIN_BATCH_SIZE, le=MAX_BATCH_SIZE)
    slice_budget_ms: float = Field(default=16.0, gt=0)
    idle_timeout_ms: float = Field(default=1000.0, gt=0)
    delivery_interval_ms: float = Field(default=16.0, ge=0)
    cache: bool = False
    cache_options: CacheOptions = Field(default_factory=CacheOptions)
    preserve_partial_results: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> SchedulerConfig:
        return cls(
            batch_size=settings.batch_size,
            slice_budget_ms=settings.slice_budget_ms,
            idle_timeout_ms=settings.idle_timeout_ms,
            delivery_interval_ms=settings.delivery_interval_ms,
            cache=settings.cache_enabled,
            cache_options=CacheOptions.from_settings(settings),
        )


@dataclass(frozen=True)
class ComputeState:
    """Snapshot handed to listeners and returned by ``join()``."""

    result: list[Any] = field(default_factory=list)
    progress: int = 0
    is_running: bool = False
    error: BaseException | None = None
    cache_status: CacheStatus = field(default_factory=CacheStatus)
    state: SchedulerState = SchedulerState.IDLE
