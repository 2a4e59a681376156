# src/cache/recovery.py — v1
"""Error classification and recovery for cache operations.

Every store/cache failure is classified into a ``CacheErrorType``; the
strategy then picks a ``RecoveryAction``, tracks per-operation retry
counters, and owns a sticky fallback flag. Once fallback is entered all
wrapped operations short-circuit to their fallback value until
``reset_fallback_mode()``.

Cleanup/deletion work is not done here: the cache manager registers
handlers for CLEANUP_AND_RETRY and DELETE_CORRUPTED_CACHE.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from progcompute.cache.errors import CacheError, CacheErrorType, RecoveryAction

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClassifier = Callable[[BaseException], CacheErrorType]
RecoveryHandler = Callable[[dict[str, Any]], Awaitable[bool]]
SleepFn = Callable[[float], Awaitable[Any]]

# Checked in order; first match wins.
_CLASSIFICATION_RULES: list[tuple[CacheErrorType, tuple[str, ...]]] = [
    (CacheErrorType.INITIALIZATION_FAILED, ("not supported", "not available", "notsupported")),
    (CacheErrorType.STORAGE_QUOTA_EXCEEDED, ("quota", "storage", "disk")),
    (CacheErrorType.TIMEOUT_ERROR, ("timeout", "timed out")),
    (CacheErrorType.SERIALIZATION_ERROR, ("json", "parse", "stringify", "serializ")),
    (
        CacheErrorType.DATA_CORRUPTION,
        ("corrupt", "invalid", "malformed", "unexpected", "version mismatch"),
    ),
    (CacheErrorType.INITIALIZATION_FAILED, ("database", "transaction")),
]


def classify_cache_error(error: BaseException) -> CacheErrorType:
    """Classify an exception by its message and type name."""
    if isinstance(error, CacheError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return CacheErrorType.TIMEOUT_ERROR

    haystack = f"{error} {type(error).__name__}".lower()
    for kind, tokens in _CLASSIFICATION_RULES:
        if any(token in haystack for token in tokens):
            return kind
    return CacheErrorType.UNKNOWN_ERROR


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits with exponential backoff."""

    max_retries: int = 3
    base_delay_ms: float = 1000.0
    backoff_factor: float = 2.0

    def delay_ms(self, attempt: int) -> float:
        return self.base_delay_ms * (self.backoff_factor ** attempt)


@dataclass(frozen=True)
class RecoveryOutcome:
    recovered: bool
    action: RecoveryAction
    should_fallback: bool


class ErrorRecoveryStrategy:
    """Classifies failures and decides how cache operations recover."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classifier: ErrorClassifier = classify_cache_error,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._classifier = classifier
        self._sleep = sleep
        self._fallback_mode = False
        self._retry_counts: dict[str, int] = {}
        self._handlers: dict[RecoveryAction, RecoveryHandler] = {}

    # --- Classification ---

    def detect_error_type(self, error: BaseException) -> CacheErrorType:
        if isinstance(error, CacheError):
            return error.kind
        return self._classifier(error)

    def select_recovery_strategy(self, kind: CacheErrorType) -> RecoveryAction:
        if self._fallback_mode:
            return RecoveryAction.FALLBACK_TO_NON_CACHED
        if kind in (
            CacheErrorType.INITIALIZATION_FAILED,
            CacheErrorType.SERIALIZATION_ERROR,
        ):
            return RecoveryAction.FALLBACK_TO_NON_CACHED
        if kind == CacheErrorType.DATA_CORRUPTION:
            return RecoveryAction.DELETE_CORRUPTED_CACHE
        if kind == CacheErrorType.TIMEOUT_ERROR:
            return RecoveryAction.RETRY_OPERATION
        # STORAGE_QUOTA_EXCEEDED and UNKNOWN_ERROR
        return RecoveryAction.CLEANUP_AND_RETRY

    # --- Fallback ---

    @property
    def fallback_mode(self) -> bool:
        return self._fallback_mode

    def is_in_fallback_mode(self) -> bool:
        return self._fallback_mode

    def fallback_to_non_cached(self) -> bool:
        if not self._fallback_mode:
            logger.warning("Falling back to non-cached mode")
        self._fallback_mode = True
        self._retry_counts.clear()
        return True

    def reset_fallback_mode(self) -> None:
        self._fallback_mode = False
        self._retry_counts.clear()

    # --- Retry bookkeeping ---

    def get_retry_count(self, operation_id: str) -> int:
        return self._retry_counts.get(operation_id, 0)

    def increment_retry_count(self, operation_id: str) -> int:
        count = self.get_retry_count(operation_id) + 1
        self._retry_counts[operation_id] = count
        return count

    def reset_retry_count(self, operation_id: str) -> None:
        self._retry_counts.pop(operation_id, None)

    def should_retry(self, operation_id: str) -> bool:
        return (
            self.get_retry_count(operation_id) < self.policy.max_retries
            and not self._fallback_mode
        )

    def calculate_retry_delay(self, operation_id: str) -> float:
        """Delay in milliseconds before the next attempt."""
        return self.policy.delay_ms(self.get_retry_count(operation_id))

    async def backoff(self, operation_id: str) -> None:
        delay = self.calculate_retry_delay(operation_id)
        logger.debug("Retrying %s after %.0fms", operation_id, delay)
        await self._sleep(delay / 1000)

    # --- Recovery execution ---

    def register_handler(self, action: RecoveryAction, handler: RecoveryHandler) -> None:
        self._handlers[action] = handler

    async def execute_recovery(
        self, action: RecoveryAction, context: dict[str, Any] | None = None
    ) -> bool:
        if action == RecoveryAction.FALLBACK_TO_NON_CACHED:
            return self.fallback_to_non_cached()

        handler = self._handlers.get(action)
        if handler is None:
            logger.debug("No handler for recovery action %s", action.value)
            return True
        try:
            return await handler(context or {})
        except Exception as e:
            logger.error("Recovery action %s failed: %s", action.value, e)
            return self.fallback_to_non_cached()

    async def handle_error(
        self,
        error: BaseException,
        operation_id: str,
        context: dict[str, Any] | None = None,
    ) -> RecoveryOutcome:
        """Classify, pick an action, bump the counter and run the action."""
        kind = self.detect_error_type(error)
        logger.debug("Detected %s for operation %s", kind.value, operation_id)

        if not self.should_retry(operation_id):
            logger.warning(
                "Max retries exceeded for operation %s, falling back", operation_id
            )
            return RecoveryOutcome(
                recovered=self.fallback_to_non_cached(),
                action=RecoveryAction.FALLBACK_TO_NON_CACHED,
                should_fallback=True,
            )

        action = self.select_recovery_strategy(kind)
        self.increment_retry_count(operation_id)
        recovered = await self.execute_recovery(action, context)
        return RecoveryOutcome(
            recovered=recovered, action=action, should_fallback=self._fallback_mode
        )

    async def wrap(
        self,
        operation_id: str,
        operation: Callable[[], Awaitable[T]],
        fallback_value: T,
        context: dict[str, Any] | None = None,
    ) -> T:
        """Run ``operation`` with recovery, returning ``fallback_value`` on failure."""
        while True:
            if self._fallback_mode:
                logger.debug("Operation %s skipped in fallback mode", operation_id)
                return fallback_value
            try:
                result = await operation()
            except Exception as e:
                logger.warning("Operation %s failed: %s", operation_id, e)
                outcome = await self.handle_error(e, operation_id, context)
                if outcome.should_fallback:
                    return fallback_value
                if (
                    outcome.action == RecoveryAction.RETRY_OPERATION
                    and self.should_retry(operation_id)
                ):
                    await self.backoff(operation_id)
                    continue
                return fallback_value
            self.reset_retry_count(operation_id)
            return result
