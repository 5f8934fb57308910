"""OpenAPI metadata and customization utilities.

Enriches the generated OpenAPI schema with:
- Tags metadata
- API Key security scheme (``X-API-Key``), required only by the public API
- The 429 response shared by all rate limited operations

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from app.core.auth import API_KEY_HEADER

_AUTHENTICATED_PATHS = ("/api/v1/process",)

_RATE_LIMIT_HEADERS = {
    "X-RateLimit-Limit": "Requests allowed per window.",
    "X-RateLimit-Remaining": "Requests left in the current window.",
    "X-RateLimit-Reset": "UNIX time (seconds) when the window resets.",
}


def _too_many_requests_response() -> Dict[str, Any]:
    headers = {
        name: {"description": description, "schema": {"type": "integer"}}
        for name, description in _RATE_LIMIT_HEADERS.items()
    }
    headers["Retry-After"] = {
        "description": "Seconds to wait before retrying.",
        "schema": {"type": "integer"},
    }
    return {
        "description": "Rate limit exceeded.",
        "headers": headers,
        "content": {
            "application/json": {
                "schema": {
                    "type": "object",
                    "properties": {
                        "error": {"type": "string"},
                        "retryAfter": {"type": "integer"},
                    },
                }
            }
        },
    }


def apply_openapi_customizations(app: FastAPI) -> None:
    """Patch FastAPI's OpenAPI generation to add metadata and security.

    - Injects components.securitySchemes for API Key auth (header ``X-API-Key``)
    - Marks only the public processing API as requiring the key
    - Documents the 429 response on every operation
    - Adds tags metadata if not present
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = original_openapi()

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes.setdefault(
            "ApiKeyAuth",
            {
                "type": "apiKey",
                "in": "header",
                "name": API_KEY_HEADER,
                "description": "Provide your API key via the X-API-Key header.",
            },
        )

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        desired_tags = [
            {
                "name": "Processing",
                "description": "Split an image URL into fixed-height PNG chunks.",
            },
            {
                "name": "Health",
                "description": "Liveness checks (separate rate limit budget).",
            },
        ]
        for tag in desired_tags:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        for path, methods in schema.get("paths", {}).items():
            for method_obj in methods.values():
                if not isinstance(method_obj, dict):
                    continue
                method_obj.setdefault("responses", {})["429"] = _too_many_requests_response()
                if path in _AUTHENTICATED_PATHS:
                    method_obj["security"] = [{"ApiKeyAuth": []}]

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
