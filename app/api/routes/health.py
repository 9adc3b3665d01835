from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter

from app.core.config import settings
from app.schemas.health import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Health check endpoint.

    Used by load balancers and monitoring systems to determine service
    health. Never rate limited, so probes keep working while clients are
    throttled.
    """

    return HealthResponse(
        status="ok",
        service=settings.app.service_name,
        timestamp=datetime.now(timezone.utc),
    )
