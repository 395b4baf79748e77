"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It points settings at the in-memory store so importing the app never
touches a database file, and provides deterministic clocks and stores.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("RATE_LIMIT_STORE_BACKEND", "memory")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.sql import SqlCounterStore
from app.services.rate_limiter import RateLimiter


class FakeClock:
    """Deterministic epoch-millisecond clock."""

    def __init__(self, start: int = 0) -> None:
        self.current = start

    def __call__(self) -> int:
        return self.current

    def advance(self, ms: int) -> None:
        self.current += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'rate_limits.db'}"


@pytest.fixture
def sql_store(sqlite_url: str):
    store = SqlCounterStore.from_url(sqlite_url, timeout_ms=5000)
    store.create_schema()
    yield store
    store.close()


@pytest.fixture
def limiter(memory_store: InMemoryCounterStore, clock: FakeClock) -> RateLimiter:
    return RateLimiter(store=memory_store, clock=clock)
