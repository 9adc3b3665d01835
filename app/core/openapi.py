"""OpenAPI metadata and customization utilities.

Enriches the generated OpenAPI schema with:
- tags metadata
- a documented 429 response (and its rate limit headers) on every
  rate limited operation; health endpoints are left untouched

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

_RATE_LIMIT_HEADERS = {
    "Retry-After": "Seconds to wait before retrying.",
    "X-RateLimit-Limit": "Maximum requests per window.",
    "X-RateLimit-Remaining": "Requests left in the current window.",
    "X-RateLimit-Reset": "UNIX epoch seconds when the window resets.",
}

TAGS_METADATA = [
    {
        "name": "Gateway",
        "description": "Rate limited gateway endpoints.",
    },
    {
        "name": "Health",
        "description": "Liveness checks (never rate limited).",
    },
]


def _too_many_requests_response() -> Dict[str, Any]:
    return {
        "description": "Rate limit exceeded for the caller's tracker key.",
        "headers": {
            name: {"description": text, "schema": {"type": "string"}}
            for name, text in _RATE_LIMIT_HEADERS.items()
        },
    }


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and 429 docs."""

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in TAGS_METADATA:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            if path.endswith("/health"):
                continue
            for method_obj in methods.values():
                if isinstance(method_obj, dict):
                    method_obj.setdefault("responses", {}).setdefault(
                        "429", _too_many_requests_response()
                    )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
