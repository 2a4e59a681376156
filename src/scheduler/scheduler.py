# src/scheduler/scheduler.py — v2
"""Cooperative time-sliced scheduler.

Processes a collection in batches on the running event loop. A slice runs
batches until its time budget is spent, then yields and schedules a
continuation (idle notifier when configured, otherwise ``call_soon``) that
resumes at the exact item index. Transformed batches are forwarded to the
cache manager and buffered for throttled delivery to listeners.

Usage:
    async with Scheduler(SchedulerConfig(batch_size=500)) as scheduler:
        state = await scheduler.run(items, transform)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from collections.abc import Callable, Sequence
from typing import Any

from progcompute.cache.errors import CacheError
from progcompute.cache.manager import CacheManager
from progcompute.cache.models import CacheStatus
from progcompute.logging.context import set_phase, set_run_context
from progcompute.scheduler.interrupts import InterruptCoordinator
from progcompute.scheduler.models import (
    FRAME_INTERVAL_MS,
    ComputeState,
    IdleNotifier,
    SchedulerConfig,
    SchedulerState,
)

logger = logging.getLogger(__name__)

Listener = Callable[[ComputeState], Any]

_ACTIVE = (SchedulerState.RUNNING, SchedulerState.PAUSED)


class Scheduler:
    """Runs one computation at a time, in slices, with optional caching."""

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        cache_manager: CacheManager | None = None,
        coordinator: InterruptCoordinator | None = None,
        idle_notifier: IdleNotifier | None = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.coordinator = coordinator or InterruptCoordinator(
            preserve_partial_results=self.config.preserve_partial_results
        )
        self._cache_manager = cache_manager
        self._owns_cache_manager = cache_manager is None
        if cache_manager is not None:
            self.coordinator.set_cache_manager(cache_manager)
        self._idle_notifier = idle_notifier

        self._state = SchedulerState.IDLE
        self._items: Sequence[Any] = ()
        self._transform: Callable[[Any], Any] | None = None
        self._position = 0
        self._results: list[Any] = []
        self._delivered: list[Any] = []
        self._pending_delivery: list[Any] = []
        self._progress = 0
        self._error: BaseException | None = None
        self._cache_status = CacheStatus(enabled=self.config.cache)
        self._cache_key: str | None = None
        self._run_id: str | None = None
        self.batches_processed = 0

        # Bumped on start/reset/teardown; stale slices stop at their next check.
        self._generation = 0
        self._slice_active = False
        self._preparing = False
        self._continuation: Callable[[], None] | None = None
        self._delivery_handle: asyncio.Handle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._finished = asyncio.Event()
        self._finished.set()
        self._listeners: list[Listener] = []

    # --- Observables ---

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def result(self) -> list[Any]:
        return list(self._delivered)

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def cache_status(self) -> CacheStatus:
        return self._cache_status

    @property
    def cache_key(self) -> str | None:
        return self._cache_key

    @property
    def cache_manager(self) -> CacheManager | None:
        return self._cache_manager

    def snapshot(self) -> ComputeState:
        return ComputeState(
            result=list(self._delivered),
            progress=self._progress,
            is_running=self._state is SchedulerState.RUNNING,
            error=self._error,
            cache_status=self._cache_status,
            state=self._state,
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to state changes; returns an unsubscribe function."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # --- Control ---

    async def start(
        self,
        items: Sequence[Any],
        transform: Callable[[Any], Any],
        transform_id: str | None = None,
    ) -> None:
        """Begin a run; no-op while running or for an empty collection."""
        if self._state is SchedulerState.RUNNING or len(items) == 0:
            return

        self._cancel_handles()
        self._generation += 1
        self._slice_active = False
        self.coordinator.reset()

        self._items = items
        self._transform = transform
        self._position = 0
        self._results = []
        self._delivered = []
        self._pending_delivery = []
        self._progress = 0
        self._error = None
        self._cache_key = None
        self.batches_processed = 0
        self._state = SchedulerState.RUNNING
        self._finished.clear()
        self._run_id = uuid.uuid4().hex[:12]
        set_run_context(self._run_id)
        logger.info(
            "Starting run: items=%d, batch_size=%d, cache=%s",
            len(items), self.config.batch_size, self.config.cache,
        )
        self._notify()

        generation = self._generation
        if self.config.cache:
            self._preparing = True
            try:
                hit = await self._check_cache(items, transform, transform_id)
            finally:
                self._preparing = False
            if generation != self._generation:
                return
            if hit is not None:
                await self._complete_from_cache(hit)
                return

        if self._state is SchedulerState.RUNNING:
            self._schedule_continuation()

    async def pause(self) -> None:
        if self._state is not SchedulerState.RUNNING:
            return
        self._state = SchedulerState.PAUSED
        self._cancel_continuation()
        await self.coordinator.handle_pause()
        self._deliver()
        logger.info("Paused at item %d/%d", self._position, len(self._items))
        self._notify()

    def resume(self) -> None:
        if self._state is not SchedulerState.PAUSED:
            return
        self.coordinator.resume()
        self._state = SchedulerState.RUNNING
        # A slice still awaiting a cache write picks up on its own.
        if not self._slice_active and not self._preparing:
            self._schedule_continuation()
        logger.info("Resumed at item %d/%d", self._position, len(self._items))
        self._notify()

    async def cancel(self) -> None:
        if self._state not in _ACTIVE:
            return
        self._state = SchedulerState.CANCELLED
        self._cancel_continuation()
        await self.coordinator.handle_cancel()
        self._deliver()
        self._finished.set()
        logger.info("Cancelled at item %d/%d", self._position, len(self._items))
        self._notify()

    async def reset(self, clear_cache: bool = False) -> None:
        """Back to idle; optionally drop the cached entry for this run."""
        await self.cancel()
        self._cancel_handles()
        self._generation += 1
        self._slice_active = False
        self.coordinator.reset()

        self._results = []
        self._delivered = []
        self._pending_delivery = []
        self._progress = 0
        self._error = None
        self._position = 0
        self._state = SchedulerState.IDLE

        if clear_cache and self._cache_manager is not None and self._cache_key:
            try:
                await self._cache_manager.clear_cache(self._cache_key)
                self._cache_status = self._cache_status.model_copy(
                    update={"hit": False, "last_updated": None}
                )
            except Exception as e:
                logger.warning("Failed to clear cache on reset: %s", e)
        self._cache_key = None
        self._finished.set()
        self._notify()

    async def join(self) -> ComputeState:
        """Wait for the run to finish (completed, errored or cancelled)."""
        await self._finished.wait()
        return self.snapshot()

    async def run(
        self,
        items: Sequence[Any],
        transform: Callable[[Any], Any],
        transform_id: str | None = None,
    ) -> ComputeState:
        await self.start(items, transform, transform_id)
        return await self.join()

    async def aclose(self) -> None:
        """Teardown: stop the run and keep the persisted cache.

        A cache manager created by the scheduler is closed; one passed in by
        the caller only has this run's pending batches flushed.
        """
        self._cancel_handles()
        self._generation += 1
        self._slice_active = False
        if self._state in _ACTIVE:
            self._state = SchedulerState.CANCELLED
        await self.coordinator.handle_unmount()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._cache_manager is not None:
            if self._owns_cache_manager:
                await self._cache_manager.close()
            elif self._cache_key is not None:
                await self._cache_manager.flush(self._cache_key)
        self._finished.set()

    async def __aenter__(self) -> Scheduler:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    # --- Cache ---

    async def _ensure_cache_manager(self) -> CacheManager | None:
        if self._cache_manager is None:
            self._cache_manager = CacheManager(self.config.cache_options)
            self._owns_cache_manager = True
            self.coordinator.set_cache_manager(self._cache_manager)
        if await self._cache_manager.initialize():
            return self._cache_manager
        logger.warning("Cache unavailable, running uncached")
        return None

    async def _check_cache(
        self,
        items: Sequence[Any],
        transform: Callable[[Any], Any],
        transform_id: str | None,
    ) -> list[Any] | None:
        """Look up the run's fingerprint; returns cached data on a complete hit."""
        set_phase("cache_lookup")
        manager = await self._ensure_cache_manager()
        if manager is None:
            self._cache_status = CacheStatus(enabled=False)
            return None
        try:
            key = manager.generate_key(items, transform, transform_id)
        except CacheError as e:
            logger.warning("Cannot fingerprint input, running uncached: %s", e)
            self._cache_status = CacheStatus(enabled=False)
            return None

        self._cache_key = key
        self.coordinator.set_cache_key(key)
        set_run_context(self._run_id or "", key)

        cached = await manager.check_cache(key)
        status = await manager.get_status(key)
        if cached is not None and cached.is_complete:
            self._cache_status = CacheStatus.from_epoch_ms(
                enabled=True, hit=True, size=status.size, epoch_ms=cached.timestamp
            )
            logger.info("Cache hit for %s", key)
            return cached.data
        self._cache_status = status.model_copy(update={"hit": False})
        logger.debug("Cache miss for %s", key)
        return None

    async def _complete_from_cache(self, data: list[Any]) -> None:
        if self._state not in _ACTIVE:
            return
        self._cancel_continuation()
        self._results = list(data)
        self._delivered = list(data)
        self._position = len(self._items)
        self._progress = 100
        self._state = SchedulerState.COMPLETED
        self._finished.set()
        self._notify()

    # --- Slices ---

    def _schedule_continuation(self) -> None:
        if self._continuation is not None:
            return
        if self._idle_notifier is not None:
            self._continuation = self._idle_notifier(
                self._on_continuation, self.config.idle_timeout_ms / 1000
            )
        else:
            handle = asyncio.get_running_loop().call_soon(self._on_continuation)
            self._continuation = handle.cancel

    def _on_continuation(self) -> None:
        self._continuation = None
        task = asyncio.get_running_loop().create_task(self._run_slice(self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_continuation(self) -> None:
        cancel, self._continuation = self._continuation, None
        if cancel is not None:
            cancel()

    def _cancel_handles(self) -> None:
        self._cancel_continuation()
        if self._delivery_handle is not None:
            self._delivery_handle.cancel()
            self._delivery_handle = None

    async def _run_slice(self, generation: int) -> None:
        transform = self._transform
        if (
            generation != self._generation
            or self._state is not SchedulerState.RUNNING
            or self._slice_active
            or transform is None
        ):
            return
        self._slice_active = True
        set_phase("compute")
        started = time.perf_counter()
        batch_size = self.config.batch_size
        total = len(self._items)
        try:
            while self._state is SchedulerState.RUNNING:
                if self._position >= total:
                    await self._complete(generation)
                    return

                offset = self._position
                chunk = self._items[offset:offset + batch_size]
                try:
                    transformed = [transform(item) for item in chunk]
                except Exception as e:
                    self._fail(e)
                    return

                self._position = offset + len(chunk)
                self._results.extend(transformed)
                self._pending_delivery.extend(transformed)
                self.batches_processed += 1
                self._progress = math.floor(min(100.0, self._position / total * 100))

                if self._cache_key is not None and self._cache_manager is not None:
                    await self._store_batch(offset // batch_size, transformed)
                    if generation != self._generation:
                        return
                self._schedule_delivery()

                if (time.perf_counter() - started) * 1000 > self.config.slice_budget_ms:
                    break

            if self._state is SchedulerState.RUNNING:
                self._schedule_continuation()
        finally:
            if generation == self._generation:
                self._slice_active = False

    async def _store_batch(self, index: int, transformed: list[Any]) -> None:
        manager, key = self._cache_manager, self._cache_key
        if manager is None or key is None:
            return
        try:
            await manager.store_batch(key, transformed, index)
        except Exception as e:
            logger.warning("Failed to store batch %d: %s", index, e)

    async def _complete(self, generation: int) -> None:
        self._progress = 100
        self._deliver()
        self._state = SchedulerState.COMPLETED
        logger.info(
            "Run completed: %d items in %d batches",
            len(self._results), self.batches_processed,
        )

        manager = self._cache_manager
        if manager is not None and self._cache_key is not None:
            try:
                await manager.mark_complete(self._cache_key, self._results)
            except Exception as e:
                logger.warning("Failed to mark cache complete: %s", e)
            if generation != self._generation:
                return
            if not manager.is_ready:
                self._cache_status = self._cache_status.model_copy(
                    update={"enabled": False}
                )

        self._finished.set()
        self._notify()

    def _fail(self, error: Exception) -> None:
        logger.error("Transform failed at item %d: %s", self._position, error)
        self._error = error
        self._cancel_handles()
        self._deliver()
        self._state = SchedulerState.ERRORED
        self._finished.set()
        self._notify()

    # --- Delivery ---

    def _schedule_delivery(self) -> None:
        if self._delivery_handle is not None:
            return
        loop = asyncio.get_running_loop()
        interval = self.config.delivery_interval_ms
        if interval <= FRAME_INTERVAL_MS:
            self._delivery_handle = loop.call_soon(self._on_delivery)
        else:
            self._delivery_handle = loop.call_later(interval / 1000, self._on_delivery)

    def _on_delivery(self) -> None:
        self._delivery_handle = None
        if self._pending_delivery:
            self._deliver()
            self._notify()

    def _deliver(self) -> None:
        """Move buffered results into the visible result."""
        if self._delivery_handle is not None:
            self._delivery_handle.cancel()
            self._delivery_handle = None
        if self._pending_delivery:
            self._delivered.extend(self._pending_delivery)
            self._pending_delivery = []
