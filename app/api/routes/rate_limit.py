from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.rate_limit import (
    build_rate_limit_headers,
    build_rate_limit_identifier,
    consume_rate_limit,
    get_rate_limiter,
    hash_identifier,
)
from app.schemas.rate_limit import (
    CleanupResponse,
    RateLimitDecisionResponse,
    RateLimitStatusResponse,
)
from app.services.rate_limiter import RateLimiter

router = APIRouter(tags=["Rate Limit"])
admin_router = APIRouter(tags=["Rate Limit Admin"])


def require_admin_endpoints() -> None:
    """Hide administrative endpoints unless explicitly enabled."""
    if not settings.rate_limit.admin_endpoints_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


@router.get("/rate-limit/{category}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(
    category: str,
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitStatusResponse:
    """Report the caller's remaining quota without consuming it.

    Args:
        category: Endpoint category; unknown values report the default policy.

    Returns:
        RateLimitStatusResponse: Limit, remaining requests and reset time.
    """
    identifier = build_rate_limit_identifier(request)
    info = await run_in_threadpool(limiter.peek, identifier, category)
    if settings.rate_limit.include_headers:
        response.headers.update(build_rate_limit_headers(info))
    resolved = limiter.policies.resolve(category).category
    return RateLimitStatusResponse.from_info(resolved, info)


@router.post("/rate-limit/{category}/consume", response_model=RateLimitDecisionResponse)
async def consume_quota(
    category: str,
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitDecisionResponse:
    """Consume one unit of the caller's quota for category.

    Raises:
        HTTPException: 429 when the quota for the current window is used up.
    """
    resolved = limiter.policies.resolve(category)
    decision = await consume_rate_limit(request, response, category)
    if decision is None:
        return RateLimitDecisionResponse(
            category=resolved.category,
            allowed=True,
            enabled=False,
            limit=resolved.max_requests,
            remaining=resolved.max_requests,
            reset_at_ms=0,
        )
    return RateLimitDecisionResponse.from_decision(resolved.category, decision)


@admin_router.delete(
    "/admin/rate-limit/{category}/{identifier}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin_endpoints)],
)
async def reset_rate_limit(
    category: str,
    identifier: str,
    hashed: bool = Query(
        True,
        description=(
            "False when identifier is a raw 'ip:<address>' or 'api_key:<key>'; "
            "it is then hashed the same way as on consume"
        ),
    ),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> Response:
    """Delete a key from cache and store so it starts a fresh window.

    Keys are stored hashed (``ip:<sha256[:16]>``, ``api_key:<sha256[:16]>``).
    Pass the stored form as is, or the raw address/key with ``hashed=false``.
    """
    key_identifier = identifier if hashed else hash_identifier(identifier)
    await run_in_threadpool(limiter.reset, key_identifier, category)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.post(
    "/admin/rate-limit/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_admin_endpoints)],
)
async def run_rate_limit_cleanup(
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> CleanupResponse:
    """Run an expired-entry sweep immediately."""
    report = await run_in_threadpool(limiter.run_cleanup)
    return CleanupResponse.from_report(report)
