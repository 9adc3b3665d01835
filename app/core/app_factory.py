"""Application factory for the FastAPI gateway.

Centralizes app construction (metadata, middleware, handlers, routers) to
improve testability and separation of concerns compared to a monolithic main.
"""

from __future__ import annotations

from fastapi import FastAPI

from app.api.routes import gateway_router, health_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.identity import user_identity_middleware
from app.core.logging import configure_logging
from app.core.middleware import configure_cors, request_id_middleware
from app.core.openapi import apply_openapi_customizations


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="API Gateway",
        description=(
            "Gateway in front of the dictionary, user and TTS services. "
            "Business endpoints are rate limited per authenticated user, or "
            "per client address for anonymous traffic."
        ),
        version="0.1.0",
        debug=settings.app.debug,
    )

    # Middleware: the last one registered runs first, so the request id is
    # in place before identity resolution and rate limiting log anything.
    app.middleware("http")(user_identity_middleware)
    app.middleware("http")(request_id_middleware)
    configure_cors(app)

    setup_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(gateway_router)

    apply_openapi_customizations(app)

    return app
