# src/api/models.py — v2
"""API-level models: ComputeResult."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from progcompute.cache.models import CacheStatus
from progcompute.scheduler.models import SchedulerState


class ComputeResult(BaseModel):
    """Outcome of a ``progressive_map`` call."""

    result: list[Any] = Field(default_factory=list)
    state: SchedulerState
    progress: int = 0
    error: str | None = None
    cache_key: str | None = None
    cache_status: CacheStatus = Field(default_factory=CacheStatus)
    batches_processed: int = 0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is SchedulerState.COMPLETED
