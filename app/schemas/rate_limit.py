from __future__ import annotations

from pydantic import BaseModel, Field

from app.adapters.rate_limit.base import CleanupReport, RateLimitDecision, RateLimitInfo


class RateLimitStatusResponse(BaseModel):
    """Quota state returned by the peek endpoint."""

    category: str = Field(..., description="Resolved endpoint category")
    limit: int = Field(..., description="Max requests per window")
    remaining: int = Field(..., description="Requests left in the current window")
    reset_at_ms: int = Field(..., description="Epoch milliseconds when the window resets")
    degraded: bool = Field(False, description="True when the counter store was unavailable")

    @classmethod
    def from_info(cls, category: str, info: RateLimitInfo) -> "RateLimitStatusResponse":
        return cls(
            category=category,
            limit=info.limit,
            remaining=info.remaining,
            reset_at_ms=info.window_reset_at,
            degraded=info.degraded,
        )


class RateLimitDecisionResponse(RateLimitStatusResponse):
    """Outcome of consuming one unit of quota."""

    allowed: bool = Field(..., description="Whether the request was admitted")
    enabled: bool = Field(True, description="False when rate limiting is switched off")

    @classmethod
    def from_decision(cls, category: str, decision: RateLimitDecision) -> "RateLimitDecisionResponse":
        return cls(
            category=category,
            allowed=decision.allowed,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_at_ms=decision.window_reset_at,
            degraded=decision.degraded,
        )


class CleanupResponse(BaseModel):
    cache_removed: int
    store_removed: int
    store_error: str | None = None

    @classmethod
    def from_report(cls, report: CleanupReport) -> "CleanupResponse":
        return cls(
            cache_removed=report.cache_removed,
            store_removed=report.store_removed,
            store_error=report.store_error,
        )
