from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check used by load balancers and monitoring systems.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
def readiness_check(request: Request) -> dict:
    """Readiness check: reports whether the rate limiter and its sweeper are up."""

    limiter = getattr(request.app.state, "rate_limiter", None)
    cleanup = getattr(request.app.state, "cleanup_task", None)
    if limiter is None:
        return {"status": "starting", "rate_limiter": None}
    return {
        "status": "ok",
        "rate_limiter": {
            "store_backend": limiter.store.backend_name,
            "fail_open": limiter.fail_open,
            "cache": limiter.cache.stats(),
            "cleanup_running": bool(cleanup and cleanup.running),
        },
    }
