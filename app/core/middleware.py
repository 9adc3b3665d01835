"""HTTP middleware for request correlation and CORS.

The request id middleware:
- accepts an incoming correlation header (``LOG_REQUEST_ID_HEADER``) or
  generates a UUID
- stores it in contextvars so every log line of the request carries it
- echoes it on the response together with the total handling duration

Usage:
    app.middleware("http")(request_id_middleware)
    configure_cors(app)
"""

from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import clear_request_id, set_request_id


async def request_id_middleware(request: Request, call_next) -> Response:
    """Propagate a correlation id through the request lifecycle.

    Side Effects:
        - Sets request_id in contextvars (accessible via get_request_id())
        - Clears it once the response is produced
        - Adds the request id header and X-Request-Duration-ms to the response
    """

    header_name = settings.log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


def parse_cors_origins(origins: str | None) -> list[str]:
    """Parse comma-separated origins; unset or empty means any origin.

    Examples:
        >>> parse_cors_origins("https://a.example, https://b.example")
        ['https://a.example', 'https://b.example']
        >>> parse_cors_origins(None)
        ['*']
    """
    if not origins:
        return ["*"]
    parsed = [origin.strip() for origin in origins.split(",") if origin.strip()]
    return parsed or ["*"]


def configure_cors(app: FastAPI) -> None:
    """Register CORS for the configured origins.

    Rate limit and correlation headers are exposed so browser clients can
    read their remaining budget.
    """
    origins = parse_cors_origins(settings.app.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        # Credentials cannot be combined with a wildcard origin
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", settings.log.request_id_header],
        expose_headers=[
            settings.log.request_id_header,
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
    )
