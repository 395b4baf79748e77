"""Rate limiter orchestrating the counter cache and the durable store.

Decision flow for one request:
- Resolve the endpoint policy (unknown categories use the default one).
- If the local cache already shows a store-confirmed active window as
  exhausted, deny without a store round-trip. Counts never decrease within
  a window, so a cached exhaustion the store reported is safe to act on.
- Otherwise consume through the store's atomic increment-if-window-valid.
  The store's count is authoritative and always replaces the cache entry.
- When the window is missing or expired, create or roll it over with the
  store's conditional insert/replace. Losing that race means another
  caller created the window first, so the increment is retried.

Store failures never turn into a silent denial. Under fail-open the request
is counted in a provisional cache entry and the decision is flagged
``degraded``; a provisional entry is only trusted until the store answers
again. Under fail-closed the ``StoreUnavailableError`` propagates.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable

from app.adapters.rate_limit.base import (
    AbstractCounterStore,
    CleanupReport,
    IncrementMiss,
    RateLimitDecision,
    RateLimitInfo,
    WindowEntry,
    WindowKey,
    now_ms,
)
from app.core.errors import StoreUnavailableError
from app.services.rate_limit_policies import EndpointCategory, EndpointPolicy, PolicyTable
from app.utils.counter_cache import CounterCache

logger = logging.getLogger(__name__)

ANONYMOUS_IDENTIFIER = "anonymous"


def _hash_key(key: WindowKey) -> str:
    """Hash the limiter key for logging without exposing identifiers."""
    return hashlib.sha256(key.identifier.encode()).hexdigest()[:16]


class RateLimiter:
    """Fixed-interval window limiter backed by a cache and a durable store.

    Each key's window starts with its first request and lasts the policy's
    ``window_ms``; once it elapses the next request opens a fresh window.
    """

    def __init__(
        self,
        *,
        store: AbstractCounterStore,
        cache: CounterCache | None = None,
        policies: PolicyTable | None = None,
        clock: Callable[[], int] = now_ms,
        fail_open: bool = True,
        max_store_attempts: int = 3,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Durable counter store, the source of truth.
            cache: Process-local accelerator; a fresh one is built if omitted.
            policies: Endpoint policy table.
            clock: Time source returning UNIX epoch milliseconds.
            fail_open: Admit requests as degraded when the store fails.
            max_store_attempts: Bound on window-creation race retries.

        Raises:
            ValueError: If max_store_attempts is invalid.
        """
        if max_store_attempts < 1:
            raise ValueError("max_store_attempts must be >= 1")

        self._store = store
        self._cache = cache if cache is not None else CounterCache()
        self._policies = policies or PolicyTable()
        self._clock = clock
        self._fail_open = fail_open
        self._max_store_attempts = max_store_attempts

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    @property
    def cache(self) -> CounterCache:
        return self._cache

    @property
    def policies(self) -> PolicyTable:
        return self._policies

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    def _key(self, identifier: str, policy: EndpointPolicy) -> WindowKey:
        return WindowKey(identifier=identifier or ANONYMOUS_IDENTIFIER, endpoint=policy.category)

    def check_and_consume(
        self,
        identifier: str,
        endpoint: str | EndpointCategory | None = EndpointCategory.DEFAULT,
    ) -> RateLimitDecision:
        """Decide whether one more request is admitted and consume quota if so.

        Args:
            identifier: Caller key (hashed address, user id, API key id).
                An empty value is tracked under a shared sentinel key.
            endpoint: Endpoint category; unknown values use the default policy.

        Returns:
            RateLimitDecision with allowance and remaining quota.

        Raises:
            StoreUnavailableError: Only when the limiter is fail-closed and the
                store cannot be reached.
        """
        policy = self._policies.resolve(endpoint)
        key = self._key(identifier, policy)
        now = self._clock()

        cached = self._cache.get(key)
        if (
            cached is not None
            and not cached.provisional
            and cached.is_active(now)
            and cached.count >= policy.max_requests
        ):
            return self._denied(key, policy, cached, now, source="cache")

        try:
            entry = self._consume_from_store(key, policy, now)
        except StoreUnavailableError as exc:
            return self._degraded_decision(key, policy, now, exc)

        # The store's atomic result wins over whatever the cache held
        self._cache.set(key, entry)

        if entry.count > policy.max_requests:
            return self._denied(key, policy, entry, now, source="store")

        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_hash": _hash_key(key),
                "endpoint": policy.category,
                "limit": policy.max_requests,
                "count": entry.count,
            },
        )
        return RateLimitDecision.allow(
            limit=policy.max_requests,
            count=entry.count,
            window_reset_at=entry.window_reset_at,
        )

    def _consume_from_store(self, key: WindowKey, policy: EndpointPolicy, now: int) -> WindowEntry:
        for attempt in range(1, self._max_store_attempts + 1):
            outcome = self._store.increment_if_window_valid(key, now)
            if isinstance(outcome, WindowEntry):
                return outcome

            fresh = WindowEntry(count=1, window_reset_at=now + policy.window_ms)
            if outcome is IncrementMiss.ABSENT:
                created = self._store.insert_if_absent(key, fresh)
            else:
                created = self._store.replace_if_expired(key, fresh, now)
            if created:
                logger.debug(
                    "rate_limit.window_opened",
                    extra={
                        "key_hash": _hash_key(key),
                        "endpoint": policy.category,
                        "reason": outcome.value,
                        "window_reset_at": fresh.window_reset_at,
                    },
                )
                return fresh

            logger.debug(
                "rate_limit.window_race_lost",
                extra={"key_hash": _hash_key(key), "endpoint": policy.category, "attempt": attempt},
            )

        raise StoreUnavailableError(
            code="store_contention",
            message="Could not settle the rate limit window under contention",
            details={
                "operation": "check_and_consume",
                "backend": self._store.backend_name,
                "attempts": self._max_store_attempts,
            },
        )

    def _denied(
        self,
        key: WindowKey,
        policy: EndpointPolicy,
        entry: WindowEntry,
        now: int,
        *,
        source: str,
    ) -> RateLimitDecision:
        decision = RateLimitDecision.deny(
            limit=policy.max_requests,
            window_reset_at=entry.window_reset_at,
            now=now,
        )
        logger.info(
            "rate_limit.exceeded",
            extra={
                "key_hash": _hash_key(key),
                "endpoint": policy.category,
                "limit": policy.max_requests,
                "source": source,
                "retry_after_s": decision.retry_after_seconds,
            },
        )
        return decision

    def _degraded_decision(
        self,
        key: WindowKey,
        policy: EndpointPolicy,
        now: int,
        exc: StoreUnavailableError,
    ) -> RateLimitDecision:
        if not self._fail_open:
            logger.error(
                "rate_limit.store_unavailable",
                extra={
                    "key_hash": _hash_key(key),
                    "endpoint": policy.category,
                    "error_code": exc.code,
                    "policy": "fail_closed",
                },
            )
            raise exc

        logger.warning(
            "rate_limit.store_unavailable",
            extra={
                "key_hash": _hash_key(key),
                "endpoint": policy.category,
                "error_code": exc.code,
                "policy": "fail_open",
            },
        )
        # Keep a local count so this process still holds back exhausted windows
        entry = self._cache.increment_or_open_provisional(key, now, policy.window_ms)
        if entry.count > policy.max_requests:
            return RateLimitDecision.deny(
                limit=policy.max_requests,
                window_reset_at=entry.window_reset_at,
                now=now,
                degraded=True,
            )

        return RateLimitDecision.allow(
            limit=policy.max_requests,
            count=entry.count,
            window_reset_at=entry.window_reset_at,
            degraded=True,
        )

    def peek(
        self,
        identifier: str,
        endpoint: str | EndpointCategory | None = EndpointCategory.DEFAULT,
    ) -> RateLimitInfo:
        """Report remaining quota without consuming any.

        Raises:
            StoreUnavailableError: Only when fail-closed and the store fails.
        """
        policy = self._policies.resolve(endpoint)
        key = self._key(identifier, policy)
        now = self._clock()
        limit = policy.max_requests

        cached = self._cache.get(key)
        if cached is not None and not cached.provisional and cached.is_active(now):
            return RateLimitInfo(
                limit=limit,
                remaining=max(0, limit - cached.count),
                window_reset_at=cached.window_reset_at,
            )

        try:
            stored = self._store.get(key)
        except StoreUnavailableError as exc:
            if not self._fail_open:
                raise
            logger.warning(
                "rate_limit.peek_store_unavailable",
                extra={"key_hash": _hash_key(key), "endpoint": policy.category, "error_code": exc.code},
            )
            if cached is not None and cached.is_active(now):
                return RateLimitInfo(
                    limit=limit,
                    remaining=max(0, limit - cached.count),
                    window_reset_at=cached.window_reset_at,
                    degraded=True,
                )
            return RateLimitInfo(
                limit=limit,
                remaining=limit,
                window_reset_at=now + policy.window_ms,
                degraded=True,
            )

        if stored is not None and stored.is_active(now):
            return RateLimitInfo(
                limit=limit,
                remaining=max(0, limit - stored.count),
                window_reset_at=stored.window_reset_at,
            )

        return RateLimitInfo(limit=limit, remaining=limit, window_reset_at=now + policy.window_ms)

    def reset(
        self,
        identifier: str,
        endpoint: str | EndpointCategory | None = EndpointCategory.DEFAULT,
    ) -> None:
        """Forget the key in both tiers. Administrative and test use only.

        Raises:
            StoreUnavailableError: If the store delete fails.
        """
        policy = self._policies.resolve(endpoint)
        key = self._key(identifier, policy)
        self._cache.delete(key)
        self._store.delete(key)
        logger.info(
            "rate_limit.reset",
            extra={"key_hash": _hash_key(key), "endpoint": policy.category},
        )

    def run_cleanup(self) -> CleanupReport:
        """Sweep expired entries from the cache and the store.

        Only entries whose window ended before now are removed, so keys a
        concurrent request is still counting against are never touched.
        Store failures are logged and reported, not raised.
        """
        now = self._clock()
        cache_removed = self._cache.purge_expired(now)

        store_removed = 0
        store_error: str | None = None
        try:
            store_removed = self._store.delete_expired_before(now)
        except StoreUnavailableError as exc:
            store_error = exc.code
            logger.warning(
                "rate_limit.cleanup_store_unavailable",
                extra={"error_code": exc.code, "cache_removed": cache_removed},
            )

        logger.info(
            "rate_limit.cleanup",
            extra={
                "cache_removed": cache_removed,
                "store_removed": store_removed,
                "store_error": store_error,
            },
        )
        return CleanupReport(
            cache_removed=cache_removed,
            store_removed=store_removed,
            store_error=store_error,
        )

    def close(self) -> None:
        """Drop cached counters and release store resources."""
        self._cache.clear()
        self._store.close()
