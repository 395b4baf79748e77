"""In-memory counter store.

Notes:
- Per-process only: running multiple workers gives each its own counters,
  so this backend does not enforce limits across instances or restarts.
- Thread-safe: a single lock makes every primitive atomic.
"""

from __future__ import annotations

import threading

from app.adapters.rate_limit.base import (
    AbstractCounterStore,
    IncrementMiss,
    WindowEntry,
    WindowKey,
)


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store backed by a dict guarded by a lock.

    Suitable for development, tests and single-process deployments. It
    implements the same atomic primitives as the SQL store so the limiter
    behaves identically against either backend.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[WindowKey, WindowEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: WindowKey) -> WindowEntry | None:
        with self._lock:
            return self._entries.get(key)

    def increment_if_window_valid(self, key: WindowKey, now: int) -> WindowEntry | IncrementMiss:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return IncrementMiss.ABSENT
            if not entry.is_active(now):
                return IncrementMiss.EXPIRED
            updated = entry.incremented()
            self._entries[key] = updated
            return updated

    def insert_if_absent(self, key: WindowKey, entry: WindowEntry) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = entry
            return True

    def replace_if_expired(self, key: WindowKey, entry: WindowEntry, now: int) -> bool:
        with self._lock:
            current = self._entries.get(key)
            if current is None or current.is_active(now):
                return False
            self._entries[key] = entry
            return True

    def delete(self, key: WindowKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_expired_before(self, cutoff: int) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.window_reset_at < cutoff]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()
