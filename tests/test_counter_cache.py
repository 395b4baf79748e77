"""Unit tests for the sharded CounterCache."""

import threading

import pytest

from app.adapters.rate_limit.base import WindowEntry, WindowKey
from app.utils.counter_cache import CounterCache

KEY = WindowKey("ip:203.0.113.7", "auth")


def test_set_and_get_updates_hit_miss_counters() -> None:
    cache = CounterCache(shards=4)

    assert cache.get(KEY) is None
    cache.set(KEY, WindowEntry(1, 900_000))
    assert cache.get(KEY) == WindowEntry(1, 900_000)

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["entries"] == 1
    assert stats["shards"] == 4


def test_get_does_not_evict_expired_entries() -> None:
    cache = CounterCache()
    cache.set(KEY, WindowEntry(3, 1_000))

    entry = cache.get(KEY)

    assert entry is not None
    assert entry.is_active(5_000) is False
    assert len(cache) == 1


def test_set_never_moves_window_backwards() -> None:
    cache = CounterCache()
    cache.set(KEY, WindowEntry(1, 120_000))

    cache.set(KEY, WindowEntry(5, 60_000))
    assert cache.get(KEY) == WindowEntry(1, 120_000)

    cache.set(KEY, WindowEntry(7, 120_000))
    assert cache.get(KEY) == WindowEntry(7, 120_000)


def test_store_entry_replaces_provisional_window() -> None:
    cache = CounterCache()
    cache.set(KEY, WindowEntry(5, 90_000, provisional=True))

    cache.set(KEY, WindowEntry(1, 60_000))

    assert cache.get(KEY) == WindowEntry(1, 60_000)
    assert cache.get(KEY).provisional is False


def test_increment_or_open_provisional() -> None:
    cache = CounterCache()

    opened = cache.increment_or_open_provisional(KEY, now=1_000, window_ms=60_000)
    assert opened == WindowEntry(1, 61_000, provisional=True)

    cache.set(KEY, WindowEntry(3, 61_000))
    bumped = cache.increment_or_open_provisional(KEY, now=2_000, window_ms=60_000)
    assert bumped == WindowEntry(4, 61_000, provisional=True)

    reopened = cache.increment_or_open_provisional(KEY, now=61_000, window_ms=60_000)
    assert reopened == WindowEntry(1, 121_000, provisional=True)


def test_increment_if_valid() -> None:
    cache = CounterCache()

    assert cache.increment_if_valid(KEY, now=0) is None

    cache.set(KEY, WindowEntry(1, 60_000))
    assert cache.increment_if_valid(KEY, now=10) == WindowEntry(2, 60_000)
    assert cache.increment_if_valid(KEY, now=60_000) is None
    assert cache.get(KEY) == WindowEntry(2, 60_000)


def test_delete_and_clear() -> None:
    cache = CounterCache()
    other = WindowKey("ip:198.51.100.1", "auth")
    cache.set(KEY, WindowEntry(1, 60_000))
    cache.set(other, WindowEntry(1, 60_000))

    cache.delete(KEY)
    cache.delete(KEY)
    assert cache.get(KEY) is None
    assert len(cache) == 1

    cache.clear()
    stats = cache.stats()
    assert stats["entries"] == 0
    assert stats["hits"] == 0
    assert stats["misses"] == 0
    assert stats["evictions"] == 0


def test_purge_expired_is_strict_and_counts_evictions() -> None:
    cache = CounterCache(shards=3)
    for i, reset_at in enumerate([1_000, 2_000, 3_000, 4_000]):
        cache.set(WindowKey(f"id-{i}", "upload"), WindowEntry(1, reset_at))

    assert cache.purge_expired(now=2_000) == 1
    assert cache.purge_expired(now=3_500) == 2

    assert len(cache) == 1
    assert cache.get(WindowKey("id-3", "upload")) == WindowEntry(1, 4_000)
    assert cache.stats()["evictions"] == 3


def test_concurrent_increments_are_not_lost() -> None:
    cache = CounterCache(shards=2)
    cache.set(KEY, WindowEntry(0, 60_000))
    threads_count = 8
    per_thread = 250

    def _worker() -> None:
        for _ in range(per_thread):
            cache.increment_if_valid(KEY, now=0)

    threads = [threading.Thread(target=_worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert cache.get(KEY) == WindowEntry(threads_count * per_thread, 60_000)


def test_invalid_shard_count() -> None:
    with pytest.raises(ValueError):
        CounterCache(shards=0)
