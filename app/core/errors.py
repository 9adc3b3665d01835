"""Application-level exception types.

This module defines domain errors used across the gateway and its adapters,
enabling consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int
    backend: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationAppError(AppError):
    """Raised when the service is misconfigured (e.g., unknown backend)."""


@dataclass
class RateLimitAppError(AppError):
    """Raised when a caller exhausts its rate limit budget.

    Attributes:
        headers: Response headers to attach (Retry-After, X-RateLimit-*).
    """

    headers: dict[str, str] = field(default_factory=dict)
