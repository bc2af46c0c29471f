"""Embedding Cache - TTL-bound map from text fingerprint to vector.

Lookups never fail: a miss simply returns None. Capacity pressure
evicts the least recently used entry; expired entries are purged
lazily on access and by a periodic sweep.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from handoff.models import CacheEntry
from handoff.monitoring import PerformanceMonitor


logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CacheConfig:
    """Configuration for the EmbeddingCache."""
    ttl_seconds: float = 3600.0
    max_entries: int = 1000
    sweep_interval: float = 600.0


def fingerprint(text: str) -> str:
    """Case- and whitespace-insensitive hash of ``text``."""
    normalized = _WHITESPACE.sub(" ", text.strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """Process-local LRU cache of embeddings with per-entry expiry."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        monitor: PerformanceMonitor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CacheConfig()
        self._monitor = monitor
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

        self._hits = 0
        self._misses = 0
        # Deltas not yet pushed to the monitor
        self._pending_hits = 0
        self._pending_misses = 0

        self._sweep_task: asyncio.Task | None = None
        self._running = False

    def get(self, text: str) -> list[float] | None:
        """Return the cached vector for ``text`` or None."""
        key = fingerprint(text)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
            if entry is None:
                self._misses += 1
                self._pending_misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            self._pending_hits += 1
            return list(entry.vector)

    def put(self, text: str, vector: list[float], ttl: float | None = None) -> None:
        """Store ``vector`` for ``text``, evicting the LRU entry when full."""
        key = fingerprint(text)
        expires_at = self._clock() + (ttl if ttl is not None else self.config.ttl_seconds)
        with self._lock:
            self._entries[key] = CacheEntry(key, list(vector), expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self.config.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("[Cache] Evicted %s", evicted[:12])

    def __contains__(self, text: str) -> bool:
        key = fingerprint(text)
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Snapshot of size and hit/miss counters. Eventually consistent."""
        hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "size": len(self._entries),
            "hit_rate": round(hits / total * 100, 2) if total else 0.0,
            "total_hits": hits,
            "total_misses": misses,
        }

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = self._misses = 0
            self._pending_hits = self._pending_misses = 0

    def flush_counters(self) -> None:
        """Push accumulated hit/miss deltas into the monitor."""
        if self._monitor is None:
            return
        with self._lock:
            hits, misses = self._pending_hits, self._pending_misses
            self._pending_hits = self._pending_misses = 0
        if hits:
            self._monitor.increment("embedding_cache.hits", hits)
        if misses:
            self._monitor.increment("embedding_cache.misses", misses)

    # ==================== Background Sweep ====================

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.flush_counters()

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.sweep_interval)
            removed = self.cleanup_expired()
            self.flush_counters()
            if removed:
                logger.debug("[Cache] Swept %d expired embeddings", removed)
