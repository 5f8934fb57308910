"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from app.core.errors import (
    AppError,
    AuthenticationAppError,
    ConfigurationAppError,
    ImageProcessingAppError,
    RateLimitExceededAppError,
    RateLimitUnavailableAppError,
    ValidationAppError,
)
from app.core.exception_handlers import setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    @pytest.mark.parametrize(
        ("error_cls", "status_code"),
        [
            (ValidationAppError, 400),
            (AuthenticationAppError, 401),
            (ConfigurationAppError, 500),
            (ImageProcessingAppError, 500),
            (RateLimitUnavailableAppError, 503),
        ],
    )
    def test_status_code_per_error_type(
        self, client: TestClient, app_with_handlers: FastAPI, error_cls, status_code: int
    ):
        @app_with_handlers.get("/boom")
        async def boom():
            raise error_cls(code="some_code", message="Something happened")

        response = client.get("/boom")

        assert response.status_code == status_code
        data = response.json()
        assert data["error"]["code"] == "some_code"
        assert data["error"]["message"] == "Something happened"
        assert "request_id" in data["error"]

    def test_details_are_included_when_provided(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify details are included when provided."""
        @app_with_handlers.get("/details")
        async def details():
            raise ImageProcessingAppError(
                code="image_fetch_http_error",
                message="Could not access the image URL.",
                details={"context": {"http_status": 403}},
            )

        data = client.get("/details").json()

        assert data["error"]["details"]["context"]["http_status"] == 403

    def test_details_omitted_when_empty(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/plain")
        async def plain():
            raise ValidationAppError(code="test", message="test")

        assert "details" not in client.get("/plain").json()["error"]


class TestRateLimitExceededHandler:
    def test_429_with_flat_body_and_headers(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/limited")
        async def limited():
            raise RateLimitExceededAppError(
                code="rate_limit_exceeded",
                message="Too many requests. Please try again later.",
                retry_after=42,
                headers={"Retry-After": "42", "X-RateLimit-Remaining": "0"},
            )

        response = client.get("/limited")

        assert response.status_code == 429
        assert response.json() == {
            "error": "Too many requests. Please try again later.",
            "retryAfter": 42,
        }
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Remaining"] == "0"


class TestRequestValidationHandler:
    def test_body_errors_become_400(self, client: TestClient, app_with_handlers: FastAPI):
        class Payload(BaseModel):
            size: int

        @app_with_handlers.post("/payload")
        async def payload(body: Payload):
            return body

        response = client.post("/payload", json={"size": "big"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_request"
        assert error["message"].startswith("Invalid size:")


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/crash")
        async def crash():
            raise RuntimeError("Unexpected error: database connection failed")

        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"
        assert "database connection" not in response.text

    def test_general_exception_handler_never_leaks_stack_trace(self):
        """Verify stack traces are never included in response."""
        from app.core.exception_handlers import general_exception_handler

        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))

        response_text = bytes(response.body).decode()
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text
        assert json.loads(response_text)["error"]["code"] == "internal_server_error"


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        assert RateLimitExceededAppError in app_with_handlers.exception_handlers
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers
