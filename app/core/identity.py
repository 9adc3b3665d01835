"""HTTP middleware exposing the authenticated user id to the gateway.

Authentication itself happens upstream (an auth proxy or identity service).
When ``APP_TRUST_USER_ID_HEADER`` is enabled, the user id that proxy forwards
in ``APP_USER_ID_HEADER`` is copied to ``request.state.user_id`` where the
rate limiter picks it up. Otherwise ``request.state.user_id`` is always None,
so a client cannot pick its own bucket by sending the header.

Usage:
    app.middleware("http")(user_identity_middleware)
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from app.core.config import settings

logger = logging.getLogger(__name__)


async def user_identity_middleware(request: Request, call_next) -> Response:
    """Populate ``request.state.user_id`` from the trusted upstream header."""

    user_id: str | None = None
    if settings.app.trust_user_id_header:
        raw = request.headers.get(settings.app.user_id_header)
        user_id = raw.strip() if raw and raw.strip() else None
        logger.debug(
            "identity.resolved",
            extra={"authenticated": user_id is not None},
        )

    request.state.user_id = user_id
    return await call_next(request)
