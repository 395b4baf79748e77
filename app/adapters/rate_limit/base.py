"""Rate limiter types and counter store interface.

The limiter depends on this abstraction (not a concrete store) so the durable
backend can be a SQL table, an in-process dict, or another shared store
without touching the orchestration logic.

All timestamps are UNIX epoch milliseconds.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum


def now_ms() -> int:
    """Return the current UNIX time in whole milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class WindowKey:
    """Composite key of one quota bucket.

    Attributes:
        identifier: Caller-supplied opaque id (hashed address, user id, ...).
        endpoint: Resolved endpoint category name.
    """

    identifier: str
    endpoint: str

    def __str__(self) -> str:
        return f"{self.identifier}:{self.endpoint}"


@dataclass(frozen=True)
class WindowEntry:
    """Counter state for one key in its current window.

    Attributes:
        count: Requests admitted or attempted in the window.
        window_reset_at: Epoch ms at which the window ends.
        provisional: True for entries counted locally while the store was
            unavailable. They never outrank a store result and are not
            trusted for denials once the store answers again.
    """

    count: int
    window_reset_at: int
    provisional: bool = False

    def is_active(self, now: int) -> bool:
        return now < self.window_reset_at

    def incremented(self, *, provisional: bool = False) -> "WindowEntry":
        return replace(self, count=self.count + 1, provisional=self.provisional or provisional)


class IncrementMiss(Enum):
    """Why an increment-if-window-valid did not apply."""

    ABSENT = "absent"
    EXPIRED = "expired"


def _retry_after_seconds(window_reset_at: int, now: int) -> int:
    return max(0, int(math.ceil((window_reset_at - now) / 1000)))


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a check-and-consume operation.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Max requests per window for the resolved category.
        remaining: Requests left in the current window (0 when blocked).
        window_reset_at: Epoch ms when the current window resets.
        degraded: True when the store was unavailable and the decision was
            taken from process-local state only.
        retry_after_seconds: Suggested wait time when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    window_reset_at: int
    degraded: bool = False
    retry_after_seconds: int | None = None

    @classmethod
    def allow(
        cls, *, limit: int, count: int, window_reset_at: int, degraded: bool = False
    ) -> "RateLimitDecision":
        return cls(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            window_reset_at=window_reset_at,
            degraded=degraded,
        )

    @classmethod
    def deny(
        cls, *, limit: int, window_reset_at: int, now: int, degraded: bool = False
    ) -> "RateLimitDecision":
        return cls(
            allowed=False,
            limit=limit,
            remaining=0,
            window_reset_at=window_reset_at,
            degraded=degraded,
            retry_after_seconds=_retry_after_seconds(window_reset_at, now),
        )


@dataclass(frozen=True)
class RateLimitInfo:
    """Read-only quota view returned by peek."""

    limit: int
    remaining: int
    window_reset_at: int
    degraded: bool = False


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of one expired-entry sweep."""

    cache_removed: int
    store_removed: int
    store_error: str | None = None


class AbstractCounterStore(ABC):
    """Interface for durable, process-external counter stores.

    Implementations must make ``increment_if_window_valid`` and
    ``replace_if_expired`` single atomic operations: concurrent callers on
    the same key (from any process) must never both observe the same count.
    Failures, including timeouts, are raised as ``StoreUnavailableError``.
    """

    backend_name: str = "abstract"

    @abstractmethod
    def get(self, key: WindowKey) -> WindowEntry | None:
        """Return the stored entry for key, expired or not, or None."""
        raise NotImplementedError

    @abstractmethod
    def increment_if_window_valid(self, key: WindowKey, now: int) -> WindowEntry | IncrementMiss:
        """Atomically add one to the count if the window is still active.

        Args:
            key: Bucket to increment.
            now: Current epoch ms; the window is active while now < reset.

        Returns:
            The updated entry, or why nothing was incremented.
        """
        raise NotImplementedError

    @abstractmethod
    def insert_if_absent(self, key: WindowKey, entry: WindowEntry) -> bool:
        """Create the entry unless one exists. Returns True when inserted."""
        raise NotImplementedError

    @abstractmethod
    def replace_if_expired(self, key: WindowKey, entry: WindowEntry, now: int) -> bool:
        """Swap an expired entry for a fresh one. Returns True when replaced."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: WindowKey) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_expired_before(self, cutoff: int) -> int:
        """Delete entries whose window ended strictly before cutoff.

        Returns:
            Number of removed entries.
        """
        raise NotImplementedError

    def create_schema(self) -> None:
        """Prepare backing storage. No-op for stores that need none."""

    def close(self) -> None:
        """Release connections or other resources held by the store."""
