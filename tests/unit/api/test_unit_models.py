# tests/unit/api/test_models.py — v2
"""Tests for api.models — ComputeResult."""

from __future__ import annotations

from progcompute.api.models import ComputeResult
from progcompute.cache.models import CacheStatus
from progcompute.scheduler.models import SchedulerState


class TestComputeResult:
    def test_defaults(self):
        result = ComputeResult(state=SchedulerState.IDLE)
        assert result.result == []
        assert result.cache_status == CacheStatus()
        assert not result.succeeded

    def test_succeeded(self):
        result = ComputeResult(state=SchedulerState.COMPLETED, result=[1], progress=100)
        assert result.succeeded

    def test_serializes_state_value(self):
        dumped = ComputeResult(state=SchedulerState.CANCELLED).model_dump(mode="json")
        assert dumped["state"] == "cancelled"
