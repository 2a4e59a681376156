# src/cache/fingerprint.py — v4
"""Stable fingerprints for (input collection, transform) pairs.

A fingerprint has three ``_``-separated parts::

    <schema version>_<input hash>_<transform hash>

Input hash: collections of up to 1000 items are hashed in full; larger ones
are sampled (first, middle and last elements plus evenly strided samples)
and hashed together with their length. Transform hash: structural
characteristics of the transform's source text rather than the whole body,
so it is approximate; pass an explicit ``transform_id`` when two transforms
could look alike.

Hash primitive is DJB2 with 32-bit signed wraparound, rendered in base 36.
"""

from __future__ import annotations

import inspect
import json
import math
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from progcompute.cache.errors import CacheError, CacheErrorType
from progcompute.cache.models import CACHE_VERSION

FULL_HASH_THRESHOLD = 1000
MAX_SAMPLE_SIZE = 100
SAMPLE_RATIO = 0.01
MEMO_CAPACITY = 1000
EMPTY_HASH = "empty"

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def serialize(value: Any) -> str:
    """Compact JSON; non-JSON values are rendered with ``str``."""
    return json.dumps(value, separators=(",", ":"), default=str)


def djb2_hash(text: str) -> int:
    """DJB2 (seed 5381, h*33 + c) with 32-bit signed wraparound."""
    h = 5381
    for ch in text:
        h = (h * 33 + ord(ch)) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def to_base36(value: int) -> str:
    value = abs(value)
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_DIGITS[rem])
    return "".join(reversed(digits))


def create_hash(text: str) -> str:
    return to_base36(djb2_hash(text))


def data_hash_input(items: Sequence[Any]) -> str | None:
    """Text the input hash is computed from, None for an empty collection."""
    n = len(items)
    if n == 0:
        return None
    if n <= FULL_HASH_THRESHOLD:
        return serialize(list(items))

    sample_size = min(MAX_SAMPLE_SIZE, math.ceil(n * SAMPLE_RATIO))
    step = n // sample_size
    key_elements = [items[0], items[n // 2], items[n - 1]]
    key_elements.extend(items[i] for i in range(0, n, step))
    return f"{n}_{serialize(key_elements)}"


def create_data_hash(items: Sequence[Any]) -> str:
    text = data_hash_input(items)
    return EMPTY_HASH if text is None else create_hash(text)


def transform_source(transform: Callable[..., Any]) -> str:
    """Best-effort source text of a transform."""
    try:
        return inspect.getsource(transform)
    except (OSError, TypeError):
        pass
    module = getattr(transform, "__module__", None) or ""
    qualname = getattr(transform, "__qualname__", None) or type(transform).__qualname__
    code = getattr(transform, "__code__", None)
    if code is not None:
        return f"{module}.{qualname}:{code.co_code.hex()}"
    return f"{module}.{qualname}"


def create_transform_hash(
    transform: Callable[..., Any], transform_id: str | None = None
) -> str:
    text = transform_id if transform_id is not None else transform_source(transform)
    characteristics = {
        "length": len(text),
        "hasReturn": "return" in text,
        "hasLambda": "lambda" in text,
        "hasAsync": "async" in text,
        "hasAwait": "await" in text,
        "firstChars": text[:50],
        "lastChars": text[-50:],
    }
    return create_hash(serialize(characteristics))


@dataclass
class KeyGenerationStats:
    hits: int = 0
    misses: int = 0
    total_time_ms: float = 0.0

    @property
    def average_time_ms(self) -> float:
        calls = self.hits + self.misses
        return self.total_time_ms / calls if calls else 0.0

    @property
    def hit_rate(self) -> float:
        calls = self.hits + self.misses
        return self.hits / calls if calls else 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_time_ms": self.total_time_ms,
            "average_time_ms": self.average_time_ms,
            "hit_rate": self.hit_rate,
        }


class KeyDeriver:
    """Derives fingerprints and memoizes them.

    The memo is keyed by (transform hash, length, input hash), so it never
    returns a stale fingerprint and never retains the serialized input. It
    holds at most ``MEMO_CAPACITY`` keys; once full, new keys are computed
    but not remembered.
    """

    def __init__(self, schema_version: str = CACHE_VERSION) -> None:
        self.schema_version = schema_version
        self._memo: dict[tuple[str, int, str], str] = {}
        self.stats = KeyGenerationStats()

    @property
    def memo_size(self) -> int:
        return len(self._memo)

    def generate_key(
        self,
        items: Sequence[Any],
        transform: Callable[..., Any],
        transform_id: str | None = None,
    ) -> str:
        start = time.perf_counter()
        try:
            try:
                text = data_hash_input(items)
            except (TypeError, ValueError, RecursionError) as e:
                raise CacheError(
                    f"Failed to generate cache key: {e}",
                    CacheErrorType.SERIALIZATION_ERROR,
                    e,
                ) from e
            data_hash = EMPTY_HASH if text is None else create_hash(text)
            transform_hash = create_transform_hash(transform, transform_id)
            memo_key = (transform_hash, len(items), data_hash)

            cached = self._memo.get(memo_key)
            if cached is not None:
                self.stats.hits += 1
                return cached

            self.stats.misses += 1
            key = f"{self.schema_version}_{data_hash}_{transform_hash}"
            if len(self._memo) < MEMO_CAPACITY:
                self._memo[memo_key] = key
            return key
        finally:
            self.stats.total_time_ms += (time.perf_counter() - start) * 1000

    def clear(self) -> None:
        self._memo.clear()

    def reset_stats(self) -> None:
        self.stats = KeyGenerationStats()


def parse_key(key: str) -> tuple[str, str, str] | None:
    """Split a fingerprint into (version, input hash, transform hash)."""
    parts = key.split("_")
    if len(parts) < 3:
        return None
    return parts[0], parts[1], parts[2]
