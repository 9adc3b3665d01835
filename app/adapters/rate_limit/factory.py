"""Factory for creating the configured rate limiter backend."""

from __future__ import annotations

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from app.adapters.rate_limit.redis_backend import RedisFixedWindowRateLimiter
from app.core.config import AppSettings
from app.core.errors import ConfigurationAppError


def create_rate_limiter(app_settings: AppSettings) -> AbstractRateLimiter:
    """Instantiate the rate limiter selected by ``rate_limit_backend``.

    Args:
        app_settings: Application settings carrying the rate limit options.

    Returns:
        AbstractRateLimiter: Configured limiter instance.

    Raises:
        ConfigurationAppError: If the backend name is not supported.
    """
    backend = app_settings.rate_limit_backend.lower()

    if backend == "memory":
        return InMemoryFixedWindowRateLimiter(
            limit=app_settings.rate_limit_requests,
            window_seconds=app_settings.rate_limit_window_seconds,
            max_keys=app_settings.rate_limit_max_keys,
        )

    if backend == "redis":
        return RedisFixedWindowRateLimiter.from_url(
            app_settings.rate_limit_redis_url,
            limit=app_settings.rate_limit_requests,
            window_seconds=app_settings.rate_limit_window_seconds,
            key_prefix=app_settings.rate_limit_key_prefix,
            operation_timeout=app_settings.rate_limit_redis_timeout_seconds,
        )

    raise ConfigurationAppError(
        code="rate_limit_unknown_backend",
        message=(
            f"Unknown rate limit backend: '{backend}'. Supported backends: memory, redis"
        ),
        details={"backend": backend},
    )
