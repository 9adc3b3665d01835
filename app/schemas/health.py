"""Pydantic schemas for service status responses."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness payload consumed by load balancers and monitors."""

    status: str = Field("ok", description="Always 'ok' while the process serves requests.")
    service: str = Field(..., description="Configured service name.")
    timestamp: datetime = Field(..., description="Server time (UTC) when the check ran.")


class GreetingResponse(BaseModel):
    message: str
