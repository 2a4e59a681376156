# src/logging/context.py — v2
"""Contextual logging support: attach run_id, cache_key and phase to log records."""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

# Context variables for structured logging, set per computation run.
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_cache_key: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "cache_key", default=None
)
_phase: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "phase", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    run_id: str | None = None
    cache_key: str | None = None
    phase: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        run_id=_run_id.get(),
        cache_key=_cache_key.get(),
        phase=_phase.get(),
    )


def set_run_context(run_id: str, cache_key: str | None = None) -> None:
    """Set run-level context (called once per scheduler start)."""
    _run_id.set(run_id)
    _cache_key.set(cache_key)


def set_phase(phase: str | None) -> None:
    """Set the current phase (lookup, slice, flush, sweep...)."""
    _phase.set(phase)


@contextmanager
def phase_context(phase: str) -> Iterator[None]:
    """Temporarily set the phase, restoring the previous one on exit."""
    token = _phase.set(phase)
    try:
        yield
    finally:
        _phase.reset(token)


def clear_context() -> None:
    """Reset all context variables."""
    _run_id.set(None)
    _cache_key.set(None)
    _phase.set(None)
