"""Rate limiter interfaces.

The API depends on this abstraction (not a concrete implementation) so the
storage backend can be chosen by configuration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check/consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters keyed by tracker key.

    Methods are coroutines so shared backends (Redis) never block the event
    loop. ``limit`` overrides the configured budget for a single call, so one
    counter store can serve key classes with different budgets.
    """

    @abstractmethod
    async def consume(self, key: str, *, cost: int = 1, limit: int | None = None) -> RateLimitResult:
        """Consume rate limit budget for a given key.

        Args:
            key: Tracker key (e.g., ``user:42`` or a client address).
            cost: Units to consume (default 1).
            limit: Budget for this key (defaults to the limiter's limit).

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError

    @abstractmethod
    async def peek(self, key: str, *, limit: int | None = None) -> RateLimitResult:
        """Report current window usage for a key without consuming budget."""
        raise NotImplementedError


def validate_limits(limit: int, window_seconds: int) -> None:
    """Reject non-positive limiter parameters.

    Raises:
        ValueError: If limit or window_seconds are invalid.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if window_seconds < 1:
        raise ValueError("window_seconds must be >= 1")


def validate_consume_args(key: str, cost: int) -> None:
    """Reject empty keys and non-positive costs.

    Raises:
        ValueError: If key is empty or cost is invalid.
    """
    if cost < 1:
        raise ValueError("cost must be >= 1")
    if not key:
        raise ValueError("key must be a non-empty string")


def resolve_limit(default: int, override: int | None) -> int:
    """Return the per-call budget, falling back to the limiter default.

    Raises:
        ValueError: If the override is not positive.
    """
    if override is None:
        return default
    if override < 1:
        raise ValueError("limit must be >= 1")
    return override


def window_bounds(now: float, window_seconds: int) -> tuple[int, int]:
    """Compute fixed-window boundaries for a given timestamp.

    Returns:
        Tuple of (window_start_epoch_seconds, reset_at_epoch_seconds).
    """
    window_start = int(now // window_seconds) * window_seconds
    return window_start, window_start + window_seconds
