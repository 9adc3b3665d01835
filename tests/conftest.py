"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment defaults are set before any app import so that settings are
built from them rather than from a developer's .env file.
"""

import os

import pytest

# CRITICAL: Set these before any imports that might load settings
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "true")
os.environ.setdefault("APP_RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("APP_RATE_LIMIT_REQUESTS", "100")
os.environ.setdefault("APP_RATE_LIMIT_WINDOW_SECONDS", "60")
os.environ.setdefault("APP_TRUST_PROXY_HEADERS", "false")
os.environ.setdefault("APP_TRUST_USER_ID_HEADER", "false")
os.environ.setdefault("LOG_FORMAT", "plain")


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Give every test a fresh process-wide limiter."""
    from app.core import rate_limit as rate_limit_module

    rate_limit_module._limiter = None
    rate_limit_module._limiter_config = None
    yield
    rate_limit_module._limiter = None
    rate_limit_module._limiter_config = None
