from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and
the rate limiter lifecycle) to keep startup/shutdown explicit and testable.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.adapters.rate_limit.factory import create_counter_store
from app.api.routes import health_router, rate_limit_admin_router, rate_limit_router
from app.core.config import RateLimitSettings, settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.services.cleanup import CleanupTask
from app.services.rate_limiter import RateLimiter
from app.utils.counter_cache import CounterCache

logger = logging.getLogger(__name__)


def build_rate_limiter(config: RateLimitSettings | None = None) -> RateLimiter:
    """Construct a limiter (store + cache) from settings and prepare its schema."""
    cfg = config or settings.rate_limit
    store = create_counter_store(cfg)
    store.create_schema()
    return RateLimiter(
        store=store,
        cache=CounterCache(shards=cfg.cache_shards),
        fail_open=cfg.fail_open,
        max_store_attempts=cfg.max_store_attempts,
    )


def create_app(
    *,
    limiter: RateLimiter | None = None,
    cleanup_interval_seconds: float | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        limiter: Pre-built limiter (tests, embedding). Built from settings
            at startup when omitted.
        cleanup_interval_seconds: Override for the sweep interval.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    interval = cleanup_interval_seconds or settings.rate_limit.cleanup_interval_seconds

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_limiter = limiter is None
        active = limiter if limiter is not None else build_rate_limiter()
        cleanup = CleanupTask(active, interval_seconds=interval)
        app.state.rate_limiter = active
        app.state.cleanup_task = cleanup
        cleanup.start()
        logger.info(
            "app.started",
            extra={"store_backend": active.store.backend_name, "fail_open": active.fail_open},
        )
        try:
            yield
        finally:
            cleanup.stop()
            if owns_limiter:
                active.close()
            app.state.rate_limiter = None
            logger.info("app.stopped")

    app = FastAPI(
        title="Quota Gate API",
        description=(
            "Per-endpoint request quotas for the recruiting platform: a window "
            "rate limiter with a process-local counter cache in front of a "
            "durable, shared counter store."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(rate_limit_router, prefix="/v1")
    app.include_router(rate_limit_admin_router, prefix="/v1")
    app.include_router(health_router)

    return app
