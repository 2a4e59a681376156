# src/cache/manager.py — v1
"""Cache manager: lookups, incremental batch persistence, completion, sweeps.

Every public coroutine is non-fatal: store failures are logged, routed
through the ``ErrorRecoveryStrategy`` and never propagate to the caller.
Writes for one fingerprint are serialized by a per-key ``asyncio.Lock``;
batches arriving within the debounce window are coalesced into one flush.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from progcompute.cache.base_cache_store import ENTRIES_TABLE, METADATA_TABLE, BaseCacheStore
from progcompute.cache.cache_factory import create_cache_store
from progcompute.cache.errors import CacheError, CacheErrorType, RecoveryAction
from progcompute.cache.fingerprint import KeyDeriver, parse_key, serialize
from progcompute.cache.models import (
    CacheBatch,
    CacheEntry,
    CacheMetadata,
    CacheOptions,
    CacheResult,
    CacheStatus,
    now_ms,
)
from progcompute.cache.recovery import ErrorRecoveryStrategy
from progcompute.logging.context import phase_context

logger = logging.getLogger(__name__)

QUOTA_EVICTION_FRACTION = 0.25
OVER_LIMIT_TARGET_RATIO = 0.75
AGGRESSIVE_USAGE_RATIO = 0.90
AGGRESSIVE_EVICTION_FRACTION = 0.50
PREVENTIVE_USAGE_RATIO = 0.75
PREVENTIVE_COUNT_RATIO = 0.80
PREVENTIVE_EVICTION_FRACTION = 0.20

PRELOAD_MISS_DELAY_S = 0.1
PRELOAD_HIT_DELAY_S = 0.2
PRELOAD_MAX_CANDIDATES = 10
PRELOAD_TOP_N = 3
PRELOAD_RELATED_LIMIT = 2


def data_size(data: Sequence[Any]) -> int:
    """Approximate storage size: two bytes per serialized character."""
    try:
        return len(serialize(list(data))) * 2
    except (TypeError, ValueError):
        return len(data) * 100


def _shares_parts(key: str, other: str, positions: tuple[int, ...]) -> bool:
    """True if two distinct fingerprints agree on the given components."""
    a, b = parse_key(key), parse_key(other)
    if a is None or b is None or key == other:
        return False
    return all(a[i] == b[i] for i in positions)


def combine_batches(batches: list[CacheBatch]) -> list[Any]:
    combined: list[Any] = []
    for batch in sorted(batches, key=lambda b: b.index):
        combined.extend(batch.data)
    return combined


@dataclass
class BatchStorageStats:
    total_batches: int = 0
    queued_batches: int = 0
    dedupe_ratio: float = 0.0
    average_store_time_ms: float = 0.0


@dataclass
class PreloadStats:
    attempts: int = 0
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.attempts if self.attempts else 0.0


@dataclass
class CleanupReport:
    """Outcome of one ``cleanup_expired`` sweep."""

    expired: int = 0
    corrupted: int = 0
    evicted: int = 0
    emergency: bool = False
    removed_keys: list[str] = field(default_factory=list)


class CacheManager:
    """Orchestrates key derivation, the persistent store and error recovery."""

    def __init__(
        self,
        options: CacheOptions | None = None,
        store: BaseCacheStore | None = None,
        recovery: ErrorRecoveryStrategy | None = None,
        key_deriver: KeyDeriver | None = None,
    ) -> None:
        self.options = options or CacheOptions()
        self.store = store or create_cache_store(self.options)
        self.recovery = recovery or ErrorRecoveryStrategy()
        self.key_deriver = key_deriver or KeyDeriver(self.options.schema_version)
        self._initialized = False

        self._queues: dict[str, list[CacheBatch]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._flush_tasks: set[asyncio.Task[None]] = set()
        self._preload_queue: set[str] = set()
        self._preload_tasks: set[asyncio.Task[None]] = set()

        self.batch_stats = BatchStorageStats()
        self.preload_stats = PreloadStats()

        self.recovery.register_handler(
            RecoveryAction.CLEANUP_AND_RETRY, self._cleanup_handler
        )
        self.recovery.register_handler(
            RecoveryAction.DELETE_CORRUPTED_CACHE, self._delete_corrupted_handler
        )

    # --- Lifecycle ---

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_ready(self) -> bool:
        """Initialized and not degraded to non-cached mode."""
        return self._initialized and not self.recovery.is_in_fallback_mode()

    async def initialize(self) -> bool:
        """Open the store; False means the caller should run uncached."""
        operation_id = "cache_initialization"
        if self._initialized:
            return not self.recovery.is_in_fallback_mode()

        while True:
            if self.recovery.is_in_fallback_mode():
                logger.info("Cache initialization skipped in fallback mode")
                return False
            try:
                if not await self.store.is_available():
                    logger.warning("Cache store not available, running uncached")
                    self.recovery.fallback_to_non_cached()
                    return False
                await self.store.open()
            except Exception as e:
                logger.error("Failed to initialize cache: %s", e)
                outcome = await self.recovery.handle_error(e, operation_id)
                if outcome.should_fallback:
                    return False
                if (
                    outcome.action == RecoveryAction.RETRY_OPERATION
                    and self.recovery.should_retry(operation_id)
                ):
                    await self.recovery.backoff(operation_id)
                    continue
                return False

            self._initialized = True
            self.recovery.reset_retry_count(operation_id)
            logger.debug("Cache initialized")
            return True

    async def close(self) -> None:
        """Flush pending writes, stop background work and close the store."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._initialized:
            await self.flush_all()

        for task in list(self._preload_tasks):
            task.cancel()
        await asyncio.gather(
            *self._preload_tasks, *self._flush_tasks, return_exceptions=True
        )
        self._preload_tasks.clear()
        self._flush_tasks.clear()
        self._preload_queue.clear()
        self.key_deriver.clear()

        try:
            await self.store.close()
        except Exception as e:
            logger.error("Failed to close cache store: %s", e)
        self._initialized = False
        logger.debug("Cache manager closed")

    # --- Keys ---

    def generate_key(
        self,
        items: Sequence[Any],
        transform: Callable[..., Any],
        transform_id: str | None = None,
    ) -> str:
        return self.key_deriver.generate_key(items, transform, transform_id)

    # --- Lookup ---

    async def check_cache(self, key: str) -> CacheResult | None:
        if not self.is_ready:
            return None

        async def lookup() -> CacheResult | None:
            raw = await self.store.get(ENTRIES_TABLE, key)
            if raw is None:
                self._trigger_preload(key)
                return None
            try:
                entry = self._validate(raw)
            except CacheError as e:
                logger.warning("Discarding corrupted cache entry %s: %s", key, e)
                await self._delete_entry(key)
                return None
            if self._is_expired(entry):
                logger.debug("Cache entry expired: %s", key)
                await self._delete_entry(key)
                return None

            await self._touch(entry)
            self._preload_related(key)
            return CacheResult(
                data=entry.data,
                is_complete=entry.is_complete,
                timestamp=entry.metadata.timestamp,
                batches=entry.batches,
            )

        return await self.recovery.wrap(
            f"cache_check_{key}", lookup, None, context={"key": key}
        )

    async def get_status(self, key: str) -> CacheStatus:
        """Status for a fingerprint; never mutates the store."""
        if not self.is_ready:
            return CacheStatus(enabled=False)
        try:
            raw = await self.store.get(ENTRIES_TABLE, key)
            total = await self.store.count(ENTRIES_TABLE)
        except Exception as e:
            logger.error("Failed to get cache status: %s", e)
            return CacheStatus(enabled=True, hit=False, size=0)

        if raw is None:
            return CacheStatus(enabled=True, hit=False, size=total)
        try:
            entry = self._validate(raw)
        except CacheError:
            return CacheStatus(enabled=True, hit=False, size=total)
        return CacheStatus.from_epoch_ms(
            enabled=True, hit=True, size=total, epoch_ms=entry.metadata.last_accessed
        )

    # --- Incremental writes ---

    async def store_batch(self, key: str, items: Sequence[Any], index: int) -> None:
        """Queue one batch; flushed after the debounce window."""
        if not self.is_ready:
            logger.debug("Cache not available, skipping batch storage")
            return

        self.batch_stats.total_batches += 1
        self.batch_stats.queued_batches += 1
        data = list(items)
        self._queues.setdefault(key, []).append(
            CacheBatch(index=index, data=data, timestamp=now_ms(), size=data_size(data))
        )

        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(
            self.options.flush_debounce_ms / 1000, self._on_flush_timer, key
        )
        logger.debug("Queued batch %d for cache key %s", index, key)

    def _on_flush_timer(self, key: str) -> None:
        self._timers.pop(key, None)
        self._spawn(self.flush(key), self._flush_tasks)

    async def flush(self, key: str) -> None:
        """Write the key's pending batches now."""
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        with phase_context("flush"):
            async with self._lock_for(key):
                await self._flush_locked(key)

    async def flush_all(self) -> None:
        for key in set(self._queues) | set(self._locks):
            await self.flush(key)

    def pending_batches(self, key: str | None = None) -> int:
        if key is not None:
            return len(self._queues.get(key, []))
        return sum(len(q) for q in self._queues.values())

    async def _flush_locked(self, key: str) -> None:
        batches = self._queues.pop(key, [])
        if not batches:
            return
        if self.recovery.is_in_fallback_mode():
            logger.debug("Dropping %d queued batches in fallback mode", len(batches))
            return

        operation_id = f"flush_batch_queue_{key}"
        start = time.perf_counter()
        try:
            await self._write_batches(key, batches)
        except Exception as e:
            if self.recovery.detect_error_type(e) == CacheErrorType.STORAGE_QUOTA_EXCEEDED:
                logger.warning(
                    "Storage quota exceeded during batch flush, attempting cleanup"
                )
                try:
                    await self._evict_oldest(QUOTA_EVICTION_FRACTION, minimum=1)
                    if not self.recovery.is_in_fallback_mode():
                        await self._write_batches(key, batches)
                except Exception as retry_error:
                    logger.error(
                        "Dropping %d batches for %s after cleanup: %s",
                        len(batches), key, retry_error,
                    )
                    await self.recovery.handle_error(
                        retry_error, operation_id, {"key": key}
                    )
            else:
                logger.error("Failed to flush batch queue for key %s: %s", key, e)
                await self.recovery.handle_error(e, operation_id, {"key": key})
        else:
            self.recovery.reset_retry_count(operation_id)
            logger.debug("Flushed %d batches for cache key %s", len(batches), key)
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            stats = self.batch_stats
            stats.average_store_time_ms = (stats.average_store_time_ms + elapsed_ms) / 2

    async def _write_batches(self, key: str, batches: list[CacheBatch]) -> None:
        entry = await self._get_or_create(key)
        by_index = {b.index: b for b in entry.batches}
        for queued in batches:
            if self.options.dedupe_batches:
                queued = queued.model_copy(update={"data": self._dedupe(queued.data)})
            by_index[queued.index] = queued
        entry.batches = sorted(by_index.values(), key=lambda b: b.index)

        if not entry.is_complete:
            entry.data = combine_batches(entry.batches)
        largest = max(len(b.data) for b in batches)
        entry.metadata.batch_size = max(entry.metadata.batch_size, largest)
        entry.metadata.last_accessed = now_ms()
        entry.metadata.total_size = data_size(entry.data)
        await self._persist(entry)

    def _dedupe(self, data: list[Any]) -> list[Any]:
        if len(data) <= 1:
            return data
        seen: set[str] = set()
        unique: list[Any] = []
        for item in data:
            marker = serialize(item)
            if marker not in seen:
                seen.add(marker)
                unique.append(item)
        ratio = len(unique) / len(data)
        self.batch_stats.dedupe_ratio = (self.batch_stats.dedupe_ratio + ratio) / 2
        return unique

    async def mark_complete(self, key: str, result: Sequence[Any]) -> None:
        """Persist the final result; failures are logged, never raised."""
        if not self.is_ready:
            logger.warning("Cache not available, skipping completion marking")
            return

        final = list(result)
        async with self._lock_for(key):
            await self._flush_locked(key)
            try:
                await self._write_complete(key, final)
            except Exception as e:
                logger.error("Failed to mark cache complete for key %s: %s", key, e)
                if self.recovery.detect_error_type(e) != CacheErrorType.STORAGE_QUOTA_EXCEEDED:
                    return
                try:
                    await self._evict_oldest(QUOTA_EVICTION_FRACTION, minimum=1)
                    await self._write_complete(key, final)
                except Exception as retry_error:
                    logger.error("Failed to mark complete after cleanup: %s", retry_error)
                    return
            logger.debug("Marked cache complete for key %s", key)

    async def _write_complete(self, key: str, result: list[Any]) -> None:
        entry = await self._get_or_create(key)
        entry.is_complete = True
        entry.data = result
        entry.metadata.last_accessed = now_ms()
        entry.metadata.total_size = data_size(result)
        await self._persist(entry)

    # --- Removal ---

    async def clear_cache(self, key: str | None = None) -> None:
        """Delete one fingerprint, or everything when ``key`` is None."""
        if not self._initialized:
            logger.warning("Cache not initialized, nothing to clear")
            return
        try:
            if key is not None:
                await self.flush(key)
                self._locks.pop(key, None)
                await self._clear_entry(key)
            else:
                await self.flush_all()
                self._locks.clear()
                await self._clear_all()
            logger.debug("Cache cleared%s", f" for key {key}" if key else " (all entries)")
        except Exception as e:
            logger.error("Failed to clear cache%s: %s", f" for key {key}" if key else "", e)
            await self._fallback_clear(key)

    async def _clear_entry(self, key: str) -> None:
        try:
            await self.store.delete(ENTRIES_TABLE, key)
        except Exception as e:
            raise CacheError(
                f"Failed to clear cache entry for key {key}: {e}",
                CacheErrorType.UNKNOWN_ERROR,
                e,
            ) from e
        try:
            await self.store.delete(METADATA_TABLE, key)
        except Exception as e:
            logger.warning("Failed to delete metadata for key %s: %s", key, e)

    async def _clear_all(self) -> None:
        try:
            await self.store.clear(ENTRIES_TABLE)
        except Exception as e:
            raise CacheError(
                f"Failed to clear all cache entries: {e}", CacheErrorType.UNKNOWN_ERROR, e
            ) from e
        try:
            await self.store.clear(METADATA_TABLE)
        except Exception as e:
            logger.warning("Failed to clear metadata table: %s", e)

    async def _fallback_clear(self, key: str | None) -> None:
        logger.warning("Attempting fallback cleanup")
        if key is not None:
            try:
                async with self.store.transaction() as tx:
                    tx.delete(ENTRIES_TABLE, key)
                    tx.delete(METADATA_TABLE, key)
                logger.info("Fallback cleanup succeeded for key %s", key)
            except Exception as e:
                logger.error("Fallback cleanup also failed for key %s: %s", key, e)
            return

        try:
            keys = await self.store.list_keys(ENTRIES_TABLE)
        except Exception as e:
            logger.error("Fallback cleanup failed: %s", e)
            return
        removed = 0
        for cache_key in keys:
            try:
                await self._delete_entry(cache_key, raise_errors=True)
                removed += 1
            except Exception as e:
                logger.warning("Failed to delete %s during fallback: %s", cache_key, e)
        if removed:
            logger.info("Fallback cleanup removed %d/%d entries", removed, len(keys))

    async def cleanup_expired(self) -> CleanupReport:
        """Sweep expired and corrupted entries, then enforce size limits."""
        report = CleanupReport()
        if not self._initialized:
            logger.warning("Cache not initialized, skipping expired cleanup")
            return report

        with phase_context("sweep"):
            await self._sweep(report)
        return report

    async def _sweep(self, report: CleanupReport) -> None:
        try:
            keys = await self.store.list_keys(ENTRIES_TABLE)
            if not keys:
                logger.debug("No cache entries to clean up")
                return

            expired, valid, corrupted = await self._analyze(keys)
            for bad_key in corrupted:
                if await self._delete_entry(bad_key):
                    report.corrupted += 1
                    report.removed_keys.append(bad_key)
            for old_key in expired:
                if await self._delete_entry(old_key):
                    report.expired += 1
                    report.removed_keys.append(old_key)

            report.evicted += await self._evict_over_limit(valid, report)
            report.evicted += await self._check_storage_usage(report)

            logger.info(
                "Cleanup completed: %d expired, %d corrupted, %d evicted",
                report.expired, report.corrupted, report.evicted,
            )
        except Exception as e:
            logger.error("Failed to cleanup expired cache entries: %s", e)
            await self._emergency_clear()
            report.emergency = True

    async def _analyze(
        self, keys: list[str]
    ) -> tuple[list[str], list[tuple[str, int]], list[str]]:
        expired: list[str] = []
        valid: list[tuple[str, int]] = []
        corrupted: list[str] = []
        for key in keys:
            try:
                raw = await self.store.get(ENTRIES_TABLE, key)
                if raw is None:
                    corrupted.append(key)
                    continue
                entry = self._validate(raw)
            except Exception as e:
                logger.warning("Failed to analyze cache entry %s: %s", key, e)
                corrupted.append(key)
                continue
            if self._is_expired(entry):
                expired.append(key)
            else:
                valid.append((key, entry.metadata.last_accessed))
        return expired, valid, corrupted

    async def _evict_over_limit(
        self, valid: list[tuple[str, int]], report: CleanupReport
    ) -> int:
        max_entries = self.options.max_entries
        if len(valid) <= max_entries:
            return 0
        target = math.floor(max_entries * OVER_LIMIT_TARGET_RATIO)
        oldest_first = sorted(valid, key=lambda kv: kv[1])
        to_remove = oldest_first[: max(0, len(oldest_first) - target)]
        logger.debug("Evicting %d entries over the %d entry limit", len(to_remove), max_entries)
        removed = 0
        for key, _ in to_remove:
            if await self._delete_entry(key):
                removed += 1
                report.removed_keys.append(key)
        return removed

    async def _check_storage_usage(self, report: CleanupReport) -> int:
        try:
            usage = await self.store.estimate_usage()
        except Exception as e:
            logger.warning("Failed to check storage usage: %s", e)
            return await self._preventive_eviction(report)
        if usage is None:
            return 0

        used, quota = usage
        if quota <= 0:
            return 0
        ratio = used / quota
        if ratio > AGGRESSIVE_USAGE_RATIO:
            logger.warning("Storage usage high: %.1f%%, evicting aggressively", ratio * 100)
            return len(await self._evict_oldest(AGGRESSIVE_EVICTION_FRACTION, report=report))
        if ratio > PREVENTIVE_USAGE_RATIO:
            logger.info("Storage usage moderate: %.1f%%", ratio * 100)
            return await self._preventive_eviction(report)
        return 0

    async def _preventive_eviction(self, report: CleanupReport) -> int:
        count = await self.store.count(ENTRIES_TABLE)
        if count <= self.options.max_entries * PREVENTIVE_COUNT_RATIO:
            return 0
        return len(await self._evict_oldest(PREVENTIVE_EVICTION_FRACTION, report=report))

    async def _emergency_clear(self) -> None:
        logger.warning("Attempting emergency cleanup")
        try:
            await self.store.clear(ENTRIES_TABLE)
            await self.store.clear(METADATA_TABLE)
            logger.warning("Emergency cleanup cleared the entire cache")
        except Exception as e:
            logger.error("Emergency cleanup failed: %s", e)
            try:
                await self.store.close()
            except Exception as close_error:
                logger.error("Failed to close store after emergency: %s", close_error)
            self._initialized = False

    async def _evict_oldest(
        self, fraction: float, minimum: int = 0, report: CleanupReport | None = None
    ) -> list[str]:
        """Delete the least recently accessed ``fraction`` of entries."""
        keys = await self.store.list_keys(ENTRIES_TABLE)
        if not keys:
            return []

        ages: list[tuple[str, int]] = []
        for key in keys:
            try:
                raw = await self.store.get(ENTRIES_TABLE, key)
                entry = self._validate(raw) if raw is not None else None
            except Exception:
                # unreadable entries go first
                ages.append((key, 0))
                continue
            ages.append((key, entry.metadata.last_accessed if entry else 0))
        ages.sort(key=lambda kv: kv[1])

        count = max(minimum, math.floor(len(ages) * fraction))
        removed: list[str] = []
        for key, _ in ages[:count]:
            if await self._delete_entry(key):
                removed.append(key)
        if report is not None:
            report.removed_keys.extend(removed)
        logger.info("Evicted %d of %d cache entries", len(removed), len(ages))
        return removed

    async def _delete_entry(self, key: str, raise_errors: bool = False) -> bool:
        try:
            async with self.store.transaction() as tx:
                tx.delete(ENTRIES_TABLE, key)
                tx.delete(METADATA_TABLE, key)
        except Exception as e:
            if raise_errors:
                raise
            logger.warning("Failed to delete cache entry %s: %s", key, e)
            return False
        return True

    # --- Recovery handlers ---

    async def _cleanup_handler(self, context: dict[str, Any]) -> bool:
        await self._evict_oldest(QUOTA_EVICTION_FRACTION, minimum=1)
        return True

    async def _delete_corrupted_handler(self, context: dict[str, Any]) -> bool:
        key = context.get("key")
        if key is None:
            return True
        return await self._delete_entry(key)

    # --- Preloading ---

    def _spawn(self, coro: Coroutine[Any, Any, None], tasks: set[asyncio.Task[None]]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def _trigger_preload(self, missed_key: str) -> None:
        if missed_key in self._preload_queue:
            return
        self.preload_stats.attempts += 1
        self._preload_queue.add(missed_key)
        self._spawn(self._preload_similar(missed_key), self._preload_tasks)

    async def _preload_similar(self, base_key: str) -> None:
        """Read siblings sharing version and transform hash."""
        try:
            await asyncio.sleep(PRELOAD_MISS_DELAY_S)
            parts = parse_key(base_key)
            keys = await self.store.list_keys(ENTRIES_TABLE)
            if parts is None or not keys:
                self.preload_stats.misses += 1
                return
            similar = [k for k in keys if _shares_parts(k, base_key, (0, 2))]
            if not similar:
                self.preload_stats.misses += 1
                return
            for key in await self._select_preload_candidates(similar):
                raw = await self.store.get(ENTRIES_TABLE, key)
                if raw is not None:
                    self._validate(raw)
                    self.preload_stats.hits += 1
                    logger.debug("Preloaded cache entry %s", key)
        except Exception as e:
            logger.warning("Preloading failed: %s", e)
            self.preload_stats.misses += 1
        finally:
            self._preload_queue.discard(base_key)

    async def _select_preload_candidates(self, keys: list[str]) -> list[str]:
        now = now_ms()
        scored: list[tuple[float, str]] = []
        for key in keys[:PRELOAD_MAX_CANDIDATES]:
            try:
                raw = await self.store.get(ENTRIES_TABLE, key)
                if raw is None:
                    continue
                entry = self._validate(raw)
            except Exception as e:
                logger.warning("Failed to evaluate preload candidate %s: %s", key, e)
                continue
            if self._is_expired(entry):
                continue
            recency = entry.metadata.last_accessed / now
            completeness = 1.0 if entry.is_complete else 0.5
            size = min(1.0, 1000 / (entry.metadata.total_size or 1000))
            scored.append((recency * 0.5 + completeness * 0.3 + size * 0.2, key))
        scored.sort(key=lambda sk: sk[0], reverse=True)
        return [key for _, key in scored[:PRELOAD_TOP_N]]

    def _preload_related(self, current_key: str) -> None:
        self._spawn(self._preload_same_input(current_key), self._preload_tasks)

    async def _preload_same_input(self, current_key: str) -> None:
        """Read up to two entries sharing version and input hash."""
        try:
            await asyncio.sleep(PRELOAD_HIT_DELAY_S)
            if parse_key(current_key) is None:
                return
            keys = await self.store.list_keys(ENTRIES_TABLE)
            related = [k for k in keys if _shares_parts(k, current_key, (0, 1))]
            related = related[:PRELOAD_RELATED_LIMIT]
            for key in related:
                await self.store.get(ENTRIES_TABLE, key)
                logger.debug("Preloaded related cache entry %s", key)
        except Exception as e:
            logger.warning("Related entry preloading failed: %s", e)

    # --- Statistics ---

    def get_performance_stats(self) -> dict[str, Any]:
        stats = self.batch_stats
        return {
            "key_generation": self.key_deriver.stats.as_dict(),
            "batch_storage": {
                "total_batches": stats.total_batches,
                "queued_batches": stats.queued_batches,
                "dedupe_ratio": stats.dedupe_ratio,
                "average_store_time_ms": stats.average_store_time_ms,
            },
            "preloading": {
                "attempts": self.preload_stats.attempts,
                "hits": self.preload_stats.hits,
                "misses": self.preload_stats.misses,
                "hit_rate": self.preload_stats.hit_rate,
            },
            "cache": {
                "initialized": self._initialized,
                "fallback_mode": self.recovery.is_in_fallback_mode(),
                "queued_batches": self.pending_batches(),
                "key_memo_size": self.key_deriver.memo_size,
                "preload_queue_size": len(self._preload_queue),
            },
        }

    def clear_performance_stats(self) -> None:
        self.key_deriver.reset_stats()
        self.batch_stats = BatchStorageStats()
        self.preload_stats = PreloadStats()

    # --- Helpers ---

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _validate(self, raw: dict[str, Any]) -> CacheEntry:
        """Parse a stored record; raise DATA_CORRUPTION if unusable."""
        try:
            entry = CacheEntry.model_validate(raw)
        except ValidationError as e:
            raise CacheError(
                f"Invalid cache entry structure: {e.error_count()} errors",
                CacheErrorType.DATA_CORRUPTION,
                e,
            ) from e
        if not entry.key:
            raise CacheError("Missing cache entry key", CacheErrorType.DATA_CORRUPTION)
        if entry.version.split(".")[0] != self.options.schema_version.split(".")[0]:
            raise CacheError(
                f"Incompatible cache version {entry.version}",
                CacheErrorType.DATA_CORRUPTION,
            )
        return entry

    def _is_expired(self, entry: CacheEntry) -> bool:
        return now_ms() - entry.metadata.timestamp > self.options.max_age_ms

    async def _touch(self, entry: CacheEntry) -> None:
        entry.metadata.last_accessed = now_ms()
        try:
            await self._persist(entry)
        except Exception as e:
            logger.warning("Failed to update last accessed time: %s", e)

    async def _get_or_create(self, key: str) -> CacheEntry:
        raw = await self.store.get(ENTRIES_TABLE, key)
        if raw is not None:
            try:
                return self._validate(raw)
            except CacheError as e:
                logger.warning("Replacing unreadable cache entry %s: %s", key, e)

        now = now_ms()
        parts = parse_key(key)
        version, data_hash, transform_hash = parts or (self.options.schema_version, "", "")
        return CacheEntry(
            key=key,
            data=[],
            metadata=CacheMetadata(
                timestamp=now,
                last_accessed=now,
                data_hash=data_hash,
                transform_hash=transform_hash,
            ),
            batches=[],
            is_complete=False,
            version=version,
        )

    async def _persist(self, entry: CacheEntry) -> None:
        async with self.store.transaction() as tx:
            tx.put(ENTRIES_TABLE, entry.key, entry.to_record())
            tx.put(METADATA_TABLE, entry.key, entry.metadata_record())
