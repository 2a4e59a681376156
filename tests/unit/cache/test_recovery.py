# tests/unit/cache/test_recovery.py — v2
"""Tests for cache/recovery.py — classification, retry bookkeeping, fallback."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import AsyncMock

import pytest

from progcompute.cache.errors import CacheError, CacheErrorType, RecoveryAction
from progcompute.cache.recovery import (
    ErrorRecoveryStrategy,
    RetryPolicy,
    classify_cache_error,
)


class TestClassifyCacheError:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (Exception("Operation not supported"), CacheErrorType.INITIALIZATION_FAILED),
            (Exception("QuotaExceededError"), CacheErrorType.STORAGE_QUOTA_EXCEEDED),
            (
                sqlite3.OperationalError("database or disk is full"),
                CacheErrorType.STORAGE_QUOTA_EXCEEDED,
            ),
            (Exception("request timed out"), CacheErrorType.TIMEOUT_ERROR),
            (TimeoutError(), CacheErrorType.TIMEOUT_ERROR),
            (asyncio.TimeoutError(), CacheErrorType.TIMEOUT_ERROR),
            (Exception("JSON parse failure"), CacheErrorType.SERIALIZATION_ERROR),
            (Exception("record is corrupt"), CacheErrorType.DATA_CORRUPTION),
            (Exception("version mismatch"), CacheErrorType.DATA_CORRUPTION),
            (Exception("database is locked"), CacheErrorType.INITIALIZATION_FAILED),
            (Exception("transaction aborted"), CacheErrorType.INITIALIZATION_FAILED),
            (Exception("something odd"), CacheErrorType.UNKNOWN_ERROR),
        ],
    )
    def test_classification(self, error, expected):
        assert classify_cache_error(error) == expected

    def test_first_rule_wins(self):
        # "not available" beats "storage"
        error = Exception("storage not available")
        assert classify_cache_error(error) == CacheErrorType.INITIALIZATION_FAILED

    def test_cache_error_keeps_kind(self):
        error = CacheError("quota timeout", CacheErrorType.DATA_CORRUPTION)
        assert classify_cache_error(error) == CacheErrorType.DATA_CORRUPTION

    def test_case_insensitive(self):
        assert classify_cache_error(Exception("DISK FULL")) == CacheErrorType.STORAGE_QUOTA_EXCEEDED


class TestSelectRecoveryStrategy:
    @pytest.mark.parametrize(
        "kind, action",
        [
            (CacheErrorType.INITIALIZATION_FAILED, RecoveryAction.FALLBACK_TO_NON_CACHED),
            (CacheErrorType.SERIALIZATION_ERROR, RecoveryAction.FALLBACK_TO_NON_CACHED),
            (CacheErrorType.STORAGE_QUOTA_EXCEEDED, RecoveryAction.CLEANUP_AND_RETRY),
            (CacheErrorType.DATA_CORRUPTION, RecoveryAction.DELETE_CORRUPTED_CACHE),
            (CacheErrorType.TIMEOUT_ERROR, RecoveryAction.RETRY_OPERATION),
            (CacheErrorType.UNKNOWN_ERROR, RecoveryAction.CLEANUP_AND_RETRY),
        ],
    )
    def test_mapping(self, kind, action):
        assert ErrorRecoveryStrategy().select_recovery_strategy(kind) == action

    def test_every_action_selectable(self):
        strategy = ErrorRecoveryStrategy()
        selected = {strategy.select_recovery_strategy(kind) for kind in CacheErrorType}
        assert selected == set(RecoveryAction)

    def test_fallback_overrides(self):
        strategy = ErrorRecoveryStrategy()
        strategy.fallback_to_non_cached()
        action = strategy.select_recovery_strategy(CacheErrorType.TIMEOUT_ERROR)
        assert action == RecoveryAction.FALLBACK_TO_NON_CACHED


class TestRetryBookkeeping:
    def test_delays(self):
        strategy = ErrorRecoveryStrategy()
        delays = []
        for _ in range(3):
            delays.append(strategy.calculate_retry_delay("op"))
            strategy.increment_retry_count("op")
        assert delays == [1000, 2000, 4000]

    def test_retry_exhaustion(self):
        strategy = ErrorRecoveryStrategy()
        for _ in range(3):
            assert strategy.should_retry("op")
            strategy.increment_retry_count("op")
        assert not strategy.should_retry("op")

    def test_reset(self):
        strategy = ErrorRecoveryStrategy()
        strategy.increment_retry_count("op")
        strategy.reset_retry_count("op")
        assert strategy.get_retry_count("op") == 0

    def test_custom_policy(self):
        policy = RetryPolicy(max_retries=1, base_delay_ms=10, backoff_factor=3)
        assert policy.delay_ms(2) == 90
        strategy = ErrorRecoveryStrategy(policy=policy)
        strategy.increment_retry_count("op")
        assert not strategy.should_retry("op")


class TestFallbackMode:
    def test_sticky_and_clears_counters(self):
        strategy = ErrorRecoveryStrategy()
        strategy.increment_retry_count("op")
        assert strategy.fallback_to_non_cached() is True
        assert strategy.is_in_fallback_mode()
        assert strategy.get_retry_count("op") == 0
        assert not strategy.should_retry("op")

    def test_reset_fallback_mode(self):
        strategy = ErrorRecoveryStrategy()
        strategy.fallback_to_non_cached()
        strategy.reset_fallback_mode()
        assert not strategy.fallback_mode


class TestHandleError:
    @pytest.mark.asyncio
    async def test_runs_registered_handler(self):
        strategy = ErrorRecoveryStrategy()
        handler = AsyncMock(return_value=True)
        strategy.register_handler(RecoveryAction.DELETE_CORRUPTED_CACHE, handler)
        outcome = await strategy.handle_error(
            CacheError("bad", CacheErrorType.DATA_CORRUPTION), "op", {"key": "k"}
        )
        handler.assert_awaited_once_with({"key": "k"})
        assert outcome.action == RecoveryAction.DELETE_CORRUPTED_CACHE
        assert outcome.recovered
        assert not outcome.should_fallback
        assert strategy.get_retry_count("op") == 1

    @pytest.mark.asyncio
    async def test_missing_handler_reports_success(self):
        strategy = ErrorRecoveryStrategy()
        outcome = await strategy.handle_error(Exception("weird"), "op")
        assert outcome.action == RecoveryAction.CLEANUP_AND_RETRY
        assert outcome.recovered

    @pytest.mark.asyncio
    async def test_failing_handler_enters_fallback(self):
        strategy = ErrorRecoveryStrategy()
        strategy.register_handler(
            RecoveryAction.CLEANUP_AND_RETRY, AsyncMock(side_effect=RuntimeError("x"))
        )
        outcome = await strategy.handle_error(Exception("quota"), "op")
        assert outcome.should_fallback
        assert strategy.is_in_fallback_mode()

    @pytest.mark.asyncio
    async def test_init_failure_falls_back(self):
        strategy = ErrorRecoveryStrategy()
        outcome = await strategy.handle_error(Exception("not supported"), "op")
        assert outcome.action == RecoveryAction.FALLBACK_TO_NON_CACHED
        assert outcome.should_fallback

    @pytest.mark.asyncio
    async def test_exhausted_retries_fall_back(self):
        strategy = ErrorRecoveryStrategy()
        for _ in range(3):
            strategy.increment_retry_count("op")
        outcome = await strategy.handle_error(Exception("timeout"), "op")
        assert outcome.should_fallback
        assert outcome.action == RecoveryAction.FALLBACK_TO_NON_CACHED


class TestWrap:
    @pytest.mark.asyncio
    async def test_success_resets_counter(self, recovery):
        recovery.increment_retry_count("op")
        result = await recovery.wrap("op", AsyncMock(return_value=42), None)
        assert result == 42
        assert recovery.get_retry_count("op") == 0

    @pytest.mark.asyncio
    async def test_fallback_mode_skips_operation(self, recovery):
        recovery.fallback_to_non_cached()
        operation = AsyncMock(return_value=42)
        assert await recovery.wrap("op", operation, "fallback") == "fallback"
        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_retried_with_backoff(self, recovery, recording_sleep):
        operation = AsyncMock(side_effect=[TimeoutError(), TimeoutError(), "ok"])
        assert await recovery.wrap("op", operation, None) == "ok"
        assert operation.await_count == 3
        assert recording_sleep.delays_ms == [2000, 4000]
        assert recovery.get_retry_count("op") == 0

    @pytest.mark.asyncio
    async def test_timeout_exhaustion_returns_fallback(self, recovery, recording_sleep):
        operation = AsyncMock(side_effect=TimeoutError())
        assert await recovery.wrap("op", operation, "fb") == "fb"
        assert operation.await_count == 3
        assert len(recording_sleep.calls) == 2

    @pytest.mark.asyncio
    async def test_non_retry_action_returns_fallback_once(self, recovery, recording_sleep):
        operation = AsyncMock(side_effect=Exception("something odd"))
        assert await recovery.wrap("op", operation, []) == []
        assert operation.await_count == 1
        assert recording_sleep.calls == []
        assert not recovery.is_in_fallback_mode()
