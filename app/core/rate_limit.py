"""Rate limiting dependency for FastAPI routes.

This module wires the tracker resolver and the rate limiting adapter into the
HTTP layer.

Design goals:
- Composition: the guard receives the tracker strategy and the limiter
  provider instead of subclassing a framework throttler, so the key policy
  and the counter mechanism can be tested independently.
- Swap-friendly: storage backend is chosen by configuration behind
  ``AbstractRateLimiter``.
- Never blocks valid traffic on its own failure: a broken tracker strategy
  degrades to the shared ``"unknown"`` bucket.

Rate limiting strategy:
- Fixed-window limit per tracker key.
- Authenticated users are tracked by user id, anonymous clients by address.
- Anonymous keys (address or "unknown") may get their own, usually smaller,
  budget through ``APP_RATE_LIMIT_ANONYMOUS_REQUESTS``.
"""

import hashlib
import logging
from typing import Callable

from fastapi import Request, Response

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.adapters.rate_limit.factory import create_rate_limiter
from app.core.config import settings
from app.core.errors import RateLimitAppError
from app.core.tracker import (
    UNKNOWN_TRACKER_KEY,
    TrackerStrategy,
    classify_tracker_key,
    identity_from_request,
    resolve_tracker_key,
)

logger = logging.getLogger(__name__)


_limiter: AbstractRateLimiter | None = None
_limiter_config: tuple | None = None


def _current_limiter_config() -> tuple:
    app_cfg = settings.app
    return (
        app_cfg.rate_limit_backend,
        app_cfg.rate_limit_requests,
        app_cfg.rate_limit_window_seconds,
        app_cfg.rate_limit_redis_url,
        app_cfg.rate_limit_key_prefix,
        app_cfg.rate_limit_redis_timeout_seconds,
        app_cfg.rate_limit_max_keys,
    )


def get_rate_limiter() -> AbstractRateLimiter:
    """Return a process-wide rate limiter instance.

    The instance is cached in-module to preserve state across requests.
    If configuration changes (primarily in tests), the limiter is rebuilt.

    Returns:
        AbstractRateLimiter: Configured limiter instance.
    """

    global _limiter, _limiter_config

    config = _current_limiter_config()
    if _limiter is None or _limiter_config != config:
        _limiter = create_rate_limiter(settings.app)
        _limiter_config = config
        logger.info(
            "rate_limit.limiter_configured",
            extra={
                "backend": settings.app.rate_limit_backend,
                "limit": settings.app.rate_limit_requests,
                "window_s": settings.app.rate_limit_window_seconds,
            },
        )

    return _limiter


def hash_tracker_key(key: str) -> str:
    """Hash the tracker key for logging without exposing user ids or addresses."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def build_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Render X-RateLimit-* headers (plus Retry-After when blocked)."""
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after_seconds or 0)
    return headers


class RateLimitGuard:
    """FastAPI dependency enforcing per-tracker-key rate limits.

    Usage:
        guard = RateLimitGuard(tracker=resolve_tracker_key)

        @router.get("/items", dependencies=[Depends(guard)])
        async def list_items(): ...
    """

    def __init__(
        self,
        *,
        tracker: TrackerStrategy = resolve_tracker_key,
        limiter_provider: Callable[[], AbstractRateLimiter] | None = None,
    ) -> None:
        """Initialize the guard.

        Args:
            tracker: Strategy mapping request identity to a tracker key.
            limiter_provider: Callable returning the limiter to charge.
                Defaults to the module-level ``get_rate_limiter``.
        """
        self._tracker = tracker
        self._limiter_provider = limiter_provider

    @property
    def limiter(self) -> AbstractRateLimiter:
        provider = self._limiter_provider or get_rate_limiter
        return provider()

    def resolve_key(self, request: Request) -> str:
        """Resolve the tracker key for a request, degrading to the sentinel.

        Args:
            request: Incoming request.

        Returns:
            str: Non-empty tracker key.
        """

        try:
            identity = identity_from_request(
                request,
                trust_proxy_headers=settings.app.trust_proxy_headers,
            )
            key = self._tracker(identity)
        except Exception as exc:
            logger.warning(
                "rate_limit.tracker_failed",
                extra={
                    "error_type": type(exc).__name__,
                    "request_path": request.url.path,
                },
            )
            return UNKNOWN_TRACKER_KEY

        if not isinstance(key, str) or not key:
            logger.warning(
                "rate_limit.tracker_invalid",
                extra={
                    "returned_type": type(key).__name__,
                    "request_path": request.url.path,
                },
            )
            return UNKNOWN_TRACKER_KEY

        return key

    def key_for(self, request: Request) -> str:
        """Return the key the guard charged for this request.

        Falls back to resolving it when the guard has not run (rate limiting
        disabled), so the strategy runs at most once per request.
        """
        key = getattr(request.state, "tracker_key", None)
        return key if key else self.resolve_key(request)

    @staticmethod
    def limit_for_key(key: str) -> int | None:
        """Return the budget override for a key class.

        Anonymous keys use ``rate_limit_anonymous_requests`` when it is set;
        ``None`` keeps the limiter's configured limit.
        """
        if classify_tracker_key(key) == "user":
            return None
        return settings.app.rate_limit_anonymous_requests

    async def __call__(self, request: Request, response: Response) -> None:
        """Consume one unit from the caller's budget.

        Args:
            request: FastAPI request.
            response: Response whose headers receive the X-RateLimit-* values.

        Raises:
            RateLimitAppError: 429 Too Many Requests when the limit is exceeded.
        """

        if not settings.app.rate_limit_enabled:
            return

        key = self.resolve_key(request)
        request.state.tracker_key = key
        result = await self.limiter.consume(key, limit=self.limit_for_key(key))
        log_fields = {
            "key_type": classify_tracker_key(key),
            "key_hash": hash_tracker_key(key),
            "limit": result.limit,
            "remaining": result.remaining,
            "window_s": settings.app.rate_limit_window_seconds,
        }

        if result.allowed:
            logger.info("rate_limit.allowed", extra=log_fields)
            if settings.app.rate_limit_include_headers:
                response.headers.update(build_rate_limit_headers(result))
            return

        retry_after = result.retry_after_seconds or 0
        logger.warning(
            "rate_limit.exceeded",
            extra={**log_fields, "retry_after_s": retry_after},
        )

        headers: dict[str, str] = {}
        if settings.app.rate_limit_include_headers:
            headers = build_rate_limit_headers(result)

        raise RateLimitAppError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Try again later.",
            details={
                "limit": result.limit,
                "reset_at": result.reset_at,
                "retry_after": retry_after,
            },
            headers=headers,
        )


# Default guard shared by all rate limited routes
enforce_rate_limit = RateLimitGuard()
