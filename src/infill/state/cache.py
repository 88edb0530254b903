"""Semantic completion cache.

Entries are keyed by the code nearest the cursor rather than the full
request, so re-requesting at the same spot (or at a spot differing only
in whitespace) is served without inference. Expiry is checked lazily on
read; eviction happens on write when the map is full.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")

PREFIX_KEY_CHARS = 200
SUFFIX_KEY_CHARS = 100
_NORMALIZED_MARKER = "N:"
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CacheKey:
    prefix: str
    suffix: str
    file_path: str | None = None
    model: str | None = None


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    access_count: int
    last_access: float


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    hit_rate: float
    memory_estimate: int


def _raw_key(key: CacheKey) -> str:
    parts = [key.prefix[-PREFIX_KEY_CHARS:], key.suffix[:SUFFIX_KEY_CHARS]]
    if key.file_path:
        parts.append(key.file_path)
    if key.model:
        parts.append(key.model)
    return "|".join(parts)


def _normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _normalized_key(key: CacheKey) -> str:
    parts = [
        _normalize_whitespace(key.prefix[-PREFIX_KEY_CHARS:]),
        _normalize_whitespace(key.suffix[:SUFFIX_KEY_CHARS]),
    ]
    if key.file_path:
        parts.append(key.file_path)
    if key.model:
        parts.append(key.model)
    return _NORMALIZED_MARKER + "|".join(parts)


def _short(key: str) -> str:
    return key if len(key) <= 50 else key[:47] + "..."


class SemanticCache(Generic[V]):
    """TTL + LRU cache keyed by cursor context."""

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 300.0,
        enable_normalization: bool = True,
        min_prefix_length: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, CacheEntry[V]] = {}
        self._max_size = max(1, max_size)
        self._ttl = ttl_seconds
        self._normalize = enable_normalization
        self._min_prefix_length = min_prefix_length
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> V | None:
        if len(key.prefix) < self._min_prefix_length:
            return None

        with self._lock:
            found_key = _raw_key(key)
            entry = self._entries.get(found_key)
            if entry is None and self._normalize:
                found_key = _normalized_key(key)
                entry = self._entries.get(found_key)

            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if now - entry.created_at > self._ttl:
                del self._entries[found_key]
                self._misses += 1
                logger.debug("Cache miss (expired): %s", _short(found_key))
                return None

            entry.access_count += 1
            entry.last_access = now
            self._hits += 1
            logger.debug("Cache hit: %s", _short(found_key))
            return entry.value

    def set(self, key: CacheKey, value: V) -> None:
        if len(key.prefix) < self._min_prefix_length:
            return

        raw = _raw_key(key)
        keys = [raw]
        if self._normalize and self._max_size > 1:
            normalized = _normalized_key(key)
            if normalized != raw:
                keys.append(normalized)

        with self._lock:
            # Make room for every new map entry so size never exceeds max_size.
            while self._entries and (
                len(self._entries) + sum(1 for k in keys if k not in self._entries)
                > self._max_size
            ):
                self._evict_lru()

            now = self._clock()
            for k in keys:
                self._entries[k] = CacheEntry(
                    value=value, created_at=now, access_count=1, last_access=now,
                )
        logger.debug("Cache set: %s", _short(raw))

    def has(self, key: CacheKey) -> bool:
        """Exact-key membership test; expired entries are removed."""
        raw = _raw_key(key)
        with self._lock:
            entry = self._entries.get(raw)
            if entry is None:
                return False
            if self._clock() - entry.created_at > self._ttl:
                del self._entries[raw]
                return False
            return True

    def invalidate_file(self, file_path: str) -> int:
        """Remove every entry whose key mentions ``file_path``."""
        if not file_path:
            return 0
        with self._lock:
            doomed = [k for k in self._entries if file_path in k]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.info("Invalidated %d cache entries for %s", len(doomed), file_path)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def prune(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                k for k, entry in self._entries.items()
                if now - entry.created_at > self._ttl
            ]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Pruned %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            memory = 0
            for entry in self._entries.values():
                memory += len(json.dumps(entry.value, default=str))
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / total if total else 0.0,
                memory_estimate=memory,
            )

    def _evict_lru(self) -> None:
        oldest_key = min(
            self._entries, key=lambda k: self._entries[k].last_access, default=None,
        )
        if oldest_key is not None:
            del self._entries[oldest_key]
            logger.debug("Evicted LRU cache entry: %s", _short(oldest_key))
