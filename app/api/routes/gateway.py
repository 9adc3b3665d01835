from fastapi import APIRouter, Depends, Request

from app.core.config import settings
from app.core.rate_limit import enforce_rate_limit
from app.core.tracker import classify_tracker_key
from app.schemas.health import GreetingResponse
from app.schemas.quota import QuotaResponse

router = APIRouter(tags=["Gateway"], dependencies=[Depends(enforce_rate_limit)])


@router.get("/", response_model=GreetingResponse)
async def root() -> GreetingResponse:
    """Greeting endpoint used as a cheap rate limited smoke test."""
    return GreetingResponse(message=f"{settings.app.service_name} is running")


@router.get("/v1/quota", response_model=QuotaResponse)
async def get_quota(request: Request) -> QuotaResponse:
    """Report the caller's remaining budget in the current window.

    The guard has already charged this request, so ``remaining`` reflects it.
    Reading the counter does not consume budget.
    """
    key = enforce_rate_limit.key_for(request)
    limit = enforce_rate_limit.limit_for_key(key)
    result = await enforce_rate_limit.limiter.peek(key, limit=limit)
    return QuotaResponse(
        enabled=settings.app.rate_limit_enabled,
        key_type=classify_tracker_key(key),
        limit=result.limit,
        remaining=result.remaining,
        reset_at=result.reset_at,
        window_seconds=settings.app.rate_limit_window_seconds,
    )
