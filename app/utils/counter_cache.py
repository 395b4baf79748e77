"""Process-local counter cache placed in front of the durable store.

Thread-safe via sharded locks: keys hash onto a fixed number of shards, each
with its own dict and lock, so unrelated keys do not contend. Entries are
immutable ``WindowEntry`` values swapped under the shard lock, which means a
reader never observes a half-updated counter.

Expired entries are not deleted on read; ``purge_expired`` (called by the
cleanup task) removes them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from app.adapters.rate_limit.base import WindowEntry, WindowKey

logger = logging.getLogger(__name__)


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[WindowKey, WindowEntry] = field(default_factory=dict)


class CounterCache:
    """Sharded, in-memory map from WindowKey to WindowEntry.

    Attributes:
        shards: Number of independently locked partitions.
    """

    def __init__(self, shards: int = 16) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"CounterCache(shards={len(self._shards)}, size={len(self)})"

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def _shard_for(self, key: WindowKey) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def _record(self, *, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def get(self, key: WindowKey) -> WindowEntry | None:
        """Return the cached entry for key, even if its window has passed."""

        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
        self._record(hit=entry is not None)
        return entry

    def set(self, key: WindowKey, entry: WindowEntry) -> None:
        """Store entry for key.

        Between two store-sourced entries the later window wins, so a slow
        writer cannot roll a key back to a window that already ended. A
        provisional entry never blocks a store-sourced one.
        """

        shard = self._shard_for(key)
        with shard.lock:
            current = shard.entries.get(key)
            if (
                current is not None
                and not current.provisional
                and not entry.provisional
                and current.window_reset_at > entry.window_reset_at
            ):
                logger.debug(
                    "counter_cache.stale_set_ignored",
                    extra={
                        "current_reset_at": current.window_reset_at,
                        "offered_reset_at": entry.window_reset_at,
                    },
                )
                return
            shard.entries[key] = entry

    def delete(self, key: WindowKey) -> None:
        shard = self._shard_for(key)
        with shard.lock:
            shard.entries.pop(key, None)

    def increment_if_valid(self, key: WindowKey, now: int) -> WindowEntry | None:
        """Atomically add one to an entry whose window is still active.

        Args:
            key: Bucket to increment.
            now: Current epoch ms.

        Returns:
            The incremented entry, or None when absent or expired.
        """

        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None or not entry.is_active(now):
                return None
            updated = entry.incremented()
            shard.entries[key] = updated
            return updated

    def increment_or_open_provisional(self, key: WindowKey, now: int, window_ms: int) -> WindowEntry:
        """Count one request locally while the store cannot be reached.

        An active entry is incremented; otherwise a new window starting at
        now is opened. Either way the result is marked provisional.
        """

        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is not None and entry.is_active(now):
                updated = entry.incremented(provisional=True)
            else:
                updated = WindowEntry(count=1, window_reset_at=now + window_ms, provisional=True)
            shard.entries[key] = updated
            return updated

    def purge_expired(self, now: int) -> int:
        """Remove entries whose window ended strictly before now.

        Returns:
            Number of removed entries.
        """

        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [k for k, e in shard.entries.items() if e.window_reset_at < now]
                for key in expired:
                    del shard.entries[key]
                removed += len(expired)
        if removed:
            with self._stats_lock:
                self._evictions += removed
        return removed

    def clear(self) -> None:
        """Remove all cached entries and reset counters."""

        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
        with self._stats_lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> dict[str, int]:
        """Return lightweight cache metrics without exposing keys."""

        entries = len(self)
        with self._stats_lock:
            return {
                "shards": len(self._shards),
                "entries": entries,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }
