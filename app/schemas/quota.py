"""Pydantic schemas for rate limit quota responses."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class QuotaResponse(BaseModel):
    """Caller's standing in the current rate limit window.

    The tracker key itself is not returned; ``key_type`` tells the caller
    whether it is counted as a user or by network address.
    """

    enabled: bool = Field(..., description="Whether rate limiting is active.")
    key_type: Literal["user", "ip", "unknown"] = Field(
        ..., description="How the caller is tracked: by user id, by address, or in the shared fallback bucket."
    )
    limit: int = Field(..., description="Maximum requests per window.")
    remaining: int = Field(..., description="Requests left in the current window.")
    reset_at: int = Field(..., description="UNIX epoch seconds when the window resets.")
    window_seconds: int = Field(..., description="Window size in seconds.")
