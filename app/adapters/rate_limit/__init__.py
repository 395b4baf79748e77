"""Rate limiting adapters.

This package holds the durable counter stores behind a small abstraction so
the limiter can run against an in-process dict in development and a shared
SQL table in production without changing the service or API layers.
"""

from app.adapters.rate_limit.base import (
    AbstractCounterStore,
    CleanupReport,
    IncrementMiss,
    RateLimitDecision,
    RateLimitInfo,
    WindowEntry,
    WindowKey,
)
from app.adapters.rate_limit.factory import create_counter_store
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.sql import SqlCounterStore

__all__ = [
    "AbstractCounterStore",
    "CleanupReport",
    "IncrementMiss",
    "InMemoryCounterStore",
    "RateLimitDecision",
    "RateLimitInfo",
    "SqlCounterStore",
    "WindowEntry",
    "WindowKey",
    "create_counter_store",
]
