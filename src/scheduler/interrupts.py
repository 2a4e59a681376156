# src/scheduler/interrupts.py — v1
"""Interrupt coordination: pause, cancel and teardown intents.

The coordinator tracks interrupt flags independently of the scheduler's
own state and decides what happens to the persisted partial result:

- pause keeps queued cache writes; they flush on their own.
- cancel keeps the entry when ``preserve_partial_results`` is set,
  otherwise clears it through the cache manager.
- teardown (unmount) always keeps the persisted cache.

Cleanup callbacks are tagged with the event they react to ("pause",
"cancel", "unmount") or "all".
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, TypeVar

if TYPE_CHECKING:
    from progcompute.cache.manager import CacheManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

CleanupEvent = Literal["pause", "cancel", "unmount", "all"]
CleanupCallback = Callable[[], Any]


@dataclass(frozen=True)
class InterruptState:
    is_interrupted: bool
    is_paused: bool
    is_cancelled: bool
    has_cleanup_callbacks: bool
    cache_key: str | None


class InterruptCoordinator:
    """Reconciles pause/cancel/teardown with cache preservation."""

    def __init__(
        self,
        cache_manager: CacheManager | None = None,
        preserve_partial_results: bool = True,
    ) -> None:
        self.cache_manager = cache_manager
        self.preserve_partial_results = preserve_partial_results
        self.is_paused = False
        self.is_cancelled = False
        self.is_interrupted = False
        self._cache_key: str | None = None
        self._callbacks: list[tuple[CleanupCallback, CleanupEvent]] = []
        self._resumed = asyncio.Event()
        self._resumed.set()

    @property
    def cache_key(self) -> str | None:
        return self._cache_key

    def set_cache_key(self, key: str | None) -> None:
        self._cache_key = key

    def set_cache_manager(self, cache_manager: CacheManager | None) -> None:
        self.cache_manager = cache_manager

    # --- Interrupts ---

    async def handle_pause(self) -> None:
        if self.is_paused:
            logger.debug("Computation already paused")
            return
        logger.debug("Pausing computation, partial results stay queued")
        self.is_paused = True
        self.is_interrupted = True
        self._resumed.clear()
        await self._run_callbacks("pause")

    async def handle_cancel(self) -> None:
        if self.is_cancelled:
            logger.debug("Computation already cancelled")
            return
        logger.debug("Cancelling computation")
        self.is_cancelled = True
        self.is_interrupted = True
        self._resumed.set()

        if self.preserve_partial_results:
            logger.debug("Preserving partial results in cache")
        else:
            await self._cleanup_partial_results()
        await self._run_callbacks("cancel")

    async def handle_unmount(self) -> None:
        """Teardown: run callbacks, drop the registry, keep the cache."""
        logger.debug("Handling teardown")
        self.is_interrupted = True
        self._resumed.set()
        await self._run_callbacks("unmount")
        self._callbacks.clear()

    def resume(self) -> None:
        """Clear the pause flags; resuming the run is the scheduler's job."""
        if not self.is_paused:
            logger.debug("Computation not paused, nothing to resume")
            return
        self.is_paused = False
        self.is_interrupted = False
        self._resumed.set()

    def reset(self) -> None:
        """Clear flags and tracked key; the callback registry is retained."""
        self.is_paused = False
        self.is_cancelled = False
        self.is_interrupted = False
        self._cache_key = None
        self._resumed.set()

    # --- Callbacks ---

    def register_cleanup_callback(
        self, callback: CleanupCallback, event: CleanupEvent = "all"
    ) -> None:
        self._callbacks.append((callback, event))

    def unregister_cleanup_callback(self, callback: CleanupCallback) -> None:
        for i, (registered, _) in enumerate(self._callbacks):
            if registered is callback:
                del self._callbacks[i]
                return

    async def _run_callbacks(self, event: CleanupEvent) -> None:
        logger.debug("Running cleanup callbacks for %s", event)
        for callback, tag in list(self._callbacks):
            if tag not in ("all", event):
                continue
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Cleanup callback failed for %s", event)

    async def _cleanup_partial_results(self) -> None:
        if self.cache_manager is None or self._cache_key is None:
            logger.debug("No cache manager or key to clean up")
            return
        logger.debug("Clearing partial results for %s", self._cache_key)
        try:
            await self.cache_manager.clear_cache(self._cache_key)
        except Exception as e:
            logger.error("Failed to clean up partial results: %s", e)

    # --- Queries ---

    def should_continue(self) -> bool:
        return not self.is_interrupted

    def should_pause(self) -> bool:
        return self.is_paused and not self.is_cancelled

    def should_cancel(self) -> bool:
        return self.is_cancelled

    async def wait_for_resume(self) -> None:
        """Block while paused; returns immediately once resumed or cancelled."""
        while self.should_pause():
            await self._resumed.wait()

    async def interrupt_aware(
        self, operation: Callable[[], Awaitable[T]], name: str
    ) -> T | None:
        """Run ``operation`` unless interrupted; None if interrupted before or during it."""
        if self.is_interrupted:
            logger.debug("Operation %s skipped due to interrupt", name)
            return None
        result = await operation()
        if self.is_interrupted:
            logger.debug("Operation %s interrupted during execution", name)
            return None
        return result

    def get_state(self) -> InterruptState:
        return InterruptState(
            is_interrupted=self.is_interrupted,
            is_paused=self.is_paused,
            is_cancelled=self.is_cancelled,
            has_cleanup_callbacks=bool(self._callbacks),
            cache_key=self._cache_key,
        )
