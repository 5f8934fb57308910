"""HTTP middleware for request correlation and response hardening.

- request_id_middleware: accepts an incoming X-Request-ID header or generates
  a UUID, keeps it in contextvars for log correlation and echoes it (plus the
  request duration) on the response.
- security_headers_middleware: adds anti-clickjacking, MIME-sniffing, XSS and
  referrer headers to every response.
- rate_limit_headers_middleware: copies the X-RateLimit-* headers recorded by
  the rate limit dependency onto the final response, error responses included.

Usage:
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(rate_limit_headers_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from app.core.config import settings
from app.core.logging import clear_request_id, set_request_id
from app.core.rate_limit import RATE_LIMIT_HEADERS_STATE

SECURITY_HEADERS: dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides an X-Request-ID header (configurable via
    LOG_REQUEST_ID_HEADER), that value is used. Otherwise, a new UUID is
    generated.

    Args:
        request: The incoming HTTP request object.
        call_next: The next middleware/route handler in the stack.

    Returns:
        Response: The response from the next handler with request_id and
            duration headers added.
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


async def security_headers_middleware(request: Request, call_next) -> Response:
    """Attach SECURITY_HEADERS to every response, keeping values set by routes."""

    response: Response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


async def rate_limit_headers_middleware(request: Request, call_next) -> Response:
    """Attach the quota headers of a gated request to its response.

    The rate limit dependency runs before authentication, body validation and
    the route itself; any of those may still fail. Headers already on the
    response (the 429 handler sets its own) are kept.
    """

    response: Response = await call_next(request)
    headers = getattr(request.state, RATE_LIMIT_HEADERS_STATE, None)
    if headers:
        for name, value in headers.items():
            response.headers.setdefault(name, value)
    return response
