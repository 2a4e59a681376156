# src/main.py — v2
"""CLI entry point — run and cache commands.

Usage:
    progcompute run <items.json> --transform module:function [options]
    progcompute cache status [--key KEY]
    progcompute cache clear [--key KEY]
    progcompute cache cleanup
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from progcompute.version import __version__

if TYPE_CHECKING:
    from progcompute.cache.manager import CacheManager

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="progcompute",
        description=f"progcompute v{__version__} — Time-sliced computation with a result cache",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- run ---
    p_run = subparsers.add_parser(
        "run", help="Transform a JSON array item by item",
    )
    p_run.add_argument("items", type=Path, help="Path to a JSON file holding an array")
    p_run.add_argument(
        "-t", "--transform", required=True,
        help="Transform as module:function",
    )
    p_run.add_argument(
        "--transform-id", default=None,
        help="Stable transform identity for the cache fingerprint",
    )
    p_run.add_argument(
        "-b", "--batch-size", type=int, default=None,
        help="Items per batch (default: from settings)",
    )
    cache_group = p_run.add_mutually_exclusive_group()
    cache_group.add_argument(
        "--cache", dest="cache", action="store_true", default=None,
        help="Enable the persistent result cache",
    )
    cache_group.add_argument(
        "--no-cache", dest="cache", action="store_false",
        help="Disable the persistent result cache",
    )
    p_run.add_argument(
        "-o", "--output", type=Path, default=None,
        help="Write the result array to this JSON file",
    )
    p_run.set_defaults(func=_cmd_run)

    # --- cache ---
    p_cache = subparsers.add_parser("cache", help="Maintain the local cache store")
    cache_sub = p_cache.add_subparsers(dest="cache_command")

    p_status = cache_sub.add_parser("status", help="Show cache status")
    p_status.add_argument("--key", default=None, help="Fingerprint to inspect")
    p_status.set_defaults(func=_cmd_cache_status)

    p_clear = cache_sub.add_parser("clear", help="Delete cached entries")
    p_clear.add_argument("--key", default=None, help="Fingerprint to delete (default: all)")
    p_clear.set_defaults(func=_cmd_cache_clear)

    p_cleanup = cache_sub.add_parser(
        "cleanup", help="Remove expired/corrupted entries and enforce limits",
    )
    p_cleanup.set_defaults(func=_cmd_cache_cleanup)

    return parser


async def _cmd_run(args: argparse.Namespace) -> int:
    """Execute a progressive computation over a JSON array."""
    from progcompute.api.facade import progressive_map
    from progcompute.config.settings import load_settings
    from progcompute.scheduler.models import SchedulerConfig

    items_path: Path = args.items
    if not items_path.exists():
        logger.error("File not found: %s", items_path)
        return 1

    items = json.loads(items_path.read_text(encoding="utf-8"))
    if not isinstance(items, list):
        logger.error("Expected a JSON array in %s", items_path)
        return 1

    transform = _load_transform(args.transform)

    config = SchedulerConfig.from_settings(load_settings())
    overrides: dict[str, Any] = {}
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.cache is not None:
        overrides["cache"] = args.cache
    if overrides:
        config = SchedulerConfig.model_validate({**config.model_dump(), **overrides})

    logger.info("Transforming %d items with %s", len(items), args.transform)
    outcome = await progressive_map(
        items, transform, config=config, transform_id=args.transform_id,
    )

    if args.output is not None:
        args.output.write_text(json.dumps(outcome.result, default=str), encoding="utf-8")

    print("\nRun complete:")
    print(f"  State:      {outcome.state.value}")
    print(f"  Items:      {len(outcome.result)}")
    print(f"  Progress:   {outcome.progress}%")
    print(f"  Batches:    {outcome.batches_processed}")
    print(f"  Cache hit:  {outcome.cache_status.hit}")
    print(f"  Duration:   {outcome.duration_seconds:.2f}s")
    if outcome.error:
        print(f"  Error:      {outcome.error}")
        return 1
    return 0


async def _cmd_cache_status(args: argparse.Namespace) -> int:
    """Display cache store status."""
    from progcompute.cache.base_cache_store import ENTRIES_TABLE

    manager = await _open_cache_manager()
    if manager is None:
        return 1
    try:
        count = await manager.store.count(ENTRIES_TABLE)
        usage = await manager.store.estimate_usage()
        print(f"\nCache store {manager.options.db_path}:")
        print(f"  Entries:    {count}")
        if usage is not None:
            used, quota = usage
            print(f"  Usage:      {used} / {quota} bytes ({used / quota * 100:.1f}%)")
        if args.key:
            status = await manager.get_status(args.key)
            print(f"  Key hit:    {status.hit}")
            if status.last_updated is not None:
                print(f"  Accessed:   {status.last_updated.isoformat()}")
    finally:
        await manager.close()
    return 0


async def _cmd_cache_clear(args: argparse.Namespace) -> int:
    """Delete one or all cache entries."""
    manager = await _open_cache_manager()
    if manager is None:
        return 1
    try:
        await manager.clear_cache(args.key)
        print(f"Cleared {'entry ' + args.key if args.key else 'all entries'}")
    finally:
        await manager.close()
    return 0


async def _cmd_cache_cleanup(args: argparse.Namespace) -> int:
    """Run an expiration and eviction sweep."""
    manager = await _open_cache_manager()
    if manager is None:
        return 1
    try:
        report = await manager.cleanup_expired()
    finally:
        await manager.close()

    print("\nCleanup complete:")
    print(f"  Expired:    {report.expired}")
    print(f"  Corrupted:  {report.corrupted}")
    print(f"  Evicted:    {report.evicted}")
    if report.emergency:
        print("  Emergency clear performed")
    return 0


async def _open_cache_manager() -> CacheManager | None:
    from progcompute.cache.manager import CacheManager
    from progcompute.cache.models import CacheOptions
    from progcompute.config.settings import load_settings

    manager = CacheManager(CacheOptions.from_settings(load_settings()))
    if not await manager.initialize():
        logger.error("Cache store unavailable: %s", manager.options.db_path)
        return None
    return manager


def _load_transform(spec: str) -> Callable[[Any], Any]:
    """Resolve ``module:function`` into a callable."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Transform must be module:function, got {spec!r}")
    target: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"{spec} is not callable")
    return target


def _setup_logging(verbose: bool) -> None:
    """Configure logging for CLI usage."""
    from progcompute.logging.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else "INFO", log_format="text")


if __name__ == "__main__":
    sys.exit(main())
