# src/cache/errors.py — v1
"""Cache error taxonomy, recovery actions and the CacheError exception."""

from __future__ import annotations

from enum import Enum


class CacheErrorType(str, Enum):
    """Fixed classification every cache/store failure is mapped into."""

    INITIALIZATION_FAILED = "INITIALIZATION_FAILED"
    STORAGE_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"
    DATA_CORRUPTION = "DATA_CORRUPTION"
    SERIALIZATION_ERROR = "SERIALIZATION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RecoveryAction(str, Enum):
    """Recovery actions selectable by the error recovery strategy."""

    RETRY_OPERATION = "RETRY_OPERATION"
    CLEANUP_AND_RETRY = "CLEANUP_AND_RETRY"
    FALLBACK_TO_NON_CACHED = "FALLBACK_TO_NON_CACHED"
    DELETE_CORRUPTED_CACHE = "DELETE_CORRUPTED_CACHE"


class CacheError(Exception):
    """Cache failure carrying an explicit classification."""

    def __init__(
        self,
        message: str,
        kind: CacheErrorType = CacheErrorType.UNKNOWN_ERROR,
        original: BaseException | None = None,
    ) -> None:
        self.kind = kind
        self.original = original
        super().__init__(message)

    def __repr__(self) -> str:
        return f"CacheError({str(self)!r}, kind={self.kind.value})"
