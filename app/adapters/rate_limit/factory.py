"""Factory pattern for creating counter store instances."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import make_url

from app.adapters.rate_limit.base import AbstractCounterStore
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.adapters.rate_limit.sql import SqlCounterStore
from app.core.config import RateLimitSettings, settings
from app.core.errors import ValidationAppError


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.database in (None, "", ":memory:"):
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def create_counter_store(config: RateLimitSettings | None = None) -> AbstractCounterStore:
    """Factory function to instantiate the durable counter store.

    Reads configuration from app.core.config.settings (Pydantic Settings)
    unless explicit settings are given.

    Returns:
        AbstractCounterStore: Configured store, schema not yet created.

    Raises:
        ValidationAppError: If the configured backend is unknown.
    """
    cfg = config or settings.rate_limit
    backend = cfg.store_backend.lower()

    if backend == "memory":
        return InMemoryCounterStore()

    if backend == "sql":
        if cfg.store_url.startswith("sqlite"):
            _ensure_sqlite_directory(cfg.store_url)
        return SqlCounterStore.from_url(
            cfg.store_url,
            timeout_ms=cfg.store_timeout_ms,
            sqlite_busy_timeout_ms=cfg.sqlite_busy_timeout_ms,
        )

    raise ValidationAppError(
        code="rate_limit_unknown_store_backend",
        message=(
            f"Unknown rate limit store backend: '{backend}'. Supported backends: sql, memory"
        ),
    )
