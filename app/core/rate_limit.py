"""Rate limiting dependency for FastAPI routes.

This module wires the rate limiter service into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on a dependency factory only.
- Lifecycle-owned state: the limiter lives on ``app.state`` and is built
  and torn down by the application lifespan.
- Distinct outcomes: 429 when a caller is over quota, 503 (via the global
  handler) when the limiter is fail-closed and its store is down, and an
  ``X-RateLimit-Degraded`` header when it admitted a request fail-open.

Identifier strategy:
- API key (hashed) when an X-API-Key header is present.
- Otherwise the client address (hashed). Forwarded headers are only
  honoured when explicitly trusted.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Awaitable, Callable

from fastapi import HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from app.adapters.rate_limit.base import RateLimitDecision, RateLimitInfo
from app.core.config import settings
from app.core.errors import StoreUnavailableError, ValidationAppError
from app.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the limiter owned by the running application.

    Raises:
        StoreUnavailableError: If the application lifespan has not built one.
    """

    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise StoreUnavailableError(
            code="rate_limiter_not_configured",
            message="Rate limiter is not initialised for this application",
            details={"hint": "Run the app with its lifespan (e.g. `with TestClient(app)`)"},
        )
    return limiter


IDENTIFIER_KINDS = ("api_key", "ip")


def _hash_value(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def hash_identifier(raw: str) -> str:
    """Turn ``ip:<address>`` or ``api_key:<key>`` into the stored, hashed form.

    Raises:
        ValidationAppError: If raw has no known ``kind:`` prefix or no value.
    """

    kind, _, value = raw.partition(":")
    if kind not in IDENTIFIER_KINDS or not value:
        raise ValidationAppError(
            code="rate_limit_invalid_identifier",
            message="Identifier must look like 'ip:<address>' or 'api_key:<key>'",
            details={"hint": f"supported kinds: {', '.join(IDENTIFIER_KINDS)}"},
        )
    return f"{kind}:{_hash_value(value)}"


def _client_address(request: Request) -> str:
    if settings.rate_limit.trust_forwarded_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else "unknown"


def build_rate_limit_identifier(request: Request) -> str:
    """Build the limiter identifier for the current request.

    Args:
        request: FastAPI request.

    Returns:
        str: Namespaced, hashed identifier such as ``ip:3f2a...``.
    """

    api_key = request.headers.get("x-api-key")
    if api_key:
        return hash_identifier(f"api_key:{api_key}")
    return hash_identifier(f"ip:{_client_address(request)}")


def _reset_epoch_seconds(window_reset_at: int) -> int:
    return -(-window_reset_at // 1000)


def build_rate_limit_headers(result: RateLimitDecision | RateLimitInfo) -> dict[str, str]:
    """Render X-RateLimit-* headers for a decision or a peek result."""

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(_reset_epoch_seconds(result.window_reset_at)),
    }
    if result.degraded:
        headers["X-RateLimit-Degraded"] = "true"
    if isinstance(result, RateLimitDecision) and not result.allowed:
        headers["Retry-After"] = str(result.retry_after_seconds or 0)
    return headers


async def consume_rate_limit(
    request: Request,
    response: Response,
    category: str,
) -> RateLimitDecision | None:
    """Consume one unit of the caller's quota for category.

    Returns:
        The decision, or None when rate limiting is disabled.

    Raises:
        HTTPException: 429 Too Many Requests when the quota is exhausted.
        StoreUnavailableError: When the limiter is fail-closed and degraded.
    """

    if not settings.rate_limit.enabled:
        return None

    limiter = get_rate_limiter(request)
    identifier = build_rate_limit_identifier(request)
    decision = await run_in_threadpool(limiter.check_and_consume, identifier, category)
    request.state.rate_limit = decision

    headers = build_rate_limit_headers(decision) if settings.rate_limit.include_headers else {}

    if decision.allowed:
        if decision.degraded:
            logger.warning(
                "rate_limit.degraded_admit",
                extra={"category": category, "request_path": request.url.path},
            )
        response.headers.update(headers)
        return decision

    logger.warning(
        "rate_limit.rejected",
        extra={
            "category": category,
            "limit": decision.limit,
            "retry_after_s": decision.retry_after_seconds,
            "request_path": request.url.path,
        },
    )
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )


def rate_limit(category: str) -> Callable[[Request, Response], Awaitable[RateLimitDecision | None]]:
    """Build a FastAPI dependency enforcing the policy of category.

    Usage:
        @router.post("/login", dependencies=[Depends(rate_limit("auth"))])
        async def login(): ...
    """

    async def enforce_rate_limit(request: Request, response: Response) -> RateLimitDecision | None:
        return await consume_rate_limit(request, response, category)

    return enforce_rate_limit
