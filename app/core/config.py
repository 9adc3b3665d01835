"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ first
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=False)


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Static type checkers treat BaseSettings fields as constructor arguments,
    which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Gateway-wide configuration."""

    service_name: str = Field(
        "api-gateway",
        description="Service name reported by the health endpoint",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    cors_origins: str | None = Field(
        None,
        description="Comma-separated list of allowed CORS origins ('*' when unset)",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable rate limiting on business endpoints",
    )
    rate_limit_requests: int = Field(
        100,
        description="Maximum number of requests allowed per window (per tracker key)",
        ge=1,
    )
    rate_limit_anonymous_requests: int | None = Field(
        None,
        description=(
            "Budget per window for anonymous tracker keys (client address or "
            "'unknown'). Defaults to rate_limit_requests when unset"
        ),
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers in responses",
    )
    rate_limit_backend: str = Field(
        "memory",
        description="Counter storage backend: 'memory' or 'redis'",
    )
    rate_limit_redis_url: str = Field(
        "redis://localhost:6379/0",
        description="Redis connection URL used when the backend is 'redis'",
    )
    rate_limit_redis_timeout_seconds: float = Field(
        0.5,
        description="Seconds to wait for Redis before failing open",
        gt=0,
    )
    rate_limit_key_prefix: str = Field(
        "rate_limit",
        description="Namespace prefix for counter keys stored in Redis",
    )
    rate_limit_max_keys: int | None = Field(
        100_000,
        description="Upper bound on tracked keys for the in-memory backend",
        ge=1,
    )

    trust_proxy_headers: bool = Field(
        False,
        description=(
            "Use X-Forwarded-For / X-Real-IP as the client address. Enable only "
            "behind a reverse proxy that overwrites these headers."
        ),
    )
    trust_user_id_header: bool = Field(
        False,
        description="Accept the authenticated user id from an upstream auth proxy header",
    )
    user_id_header: str = Field(
        "X-User-Id",
        description="Header carrying the authenticated user id set by the auth proxy",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: 'json' or 'plain'")
    output: str = Field("stdout", description="Log destination: 'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output is 'file'")
    max_bytes: int | None = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (disabled when unset)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
settings = Settings()
