from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) to
improve testability and separation of concerns compared to a monolithic main.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import health_router, process_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import (
    rate_limit_headers_middleware,
    request_id_middleware,
    security_headers_middleware,
)
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import shutdown_rate_limit_gate

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    rl = settings.rate_limit
    logger.info(
        "app.startup",
        extra={
            "processing_limit": rl.processing_limit,
            "processing_window_s": rl.processing_window_seconds,
            "health_limit": rl.health_limit,
            "health_window_s": rl.health_window_seconds,
            "rate_limit_enabled": rl.enabled,
            "remote_store_configured": rl.remote_configured,
        },
    )
    yield
    # Backend selection stays lazy (first request); only cleanup happens here
    await shutdown_rate_limit_gate()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="SplitStream API",
        description=(
            "Fetches an image by URL, optionally resizes it, and splits it into "
            "fixed-height PNG chunks returned as data URIs. Processing and health "
            "endpoints are rate limited per client with separate budgets."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    # Middleware (last added runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            origin.strip()
            for origin in settings.app.cors_allowed_origins.split(",")
            if origin.strip()
        ],
        allow_origin_regex=settings.app.cors_allow_origin_regex or None,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=[
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
            settings.log.request_id_header,
        ],
    )
    app.middleware("http")(rate_limit_headers_middleware)
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router, prefix="/api")
    app.include_router(process_router, prefix="/api")

    # OpenAPI customizations (security scheme, tags, 429 response)
    apply_openapi_customizations(app)

    return app
