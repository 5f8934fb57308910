"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context returned to clients under ``error.details``.

    Only non-sensitive values belong here, such as upstream status codes.
    Never put image URLs or client addresses in it.
    """

    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class ConfigurationAppError(AppError):
    """Raised when the server is missing configuration a route depends on."""


class ImageProcessingAppError(AppError):
    """Raised when fetching, decoding or slicing the source image fails."""


class RateLimitUnavailableAppError(AppError):
    """Raised when the limiter fails internally and fail-open is disabled."""


@dataclass
class RateLimitExceededAppError(AppError):
    """Raised when a client has used up its quota for the current window.

    Attributes:
        retry_after: Seconds until the client may retry (>= 1).
        headers: Rate limit headers to attach to the 429 response.
    """

    retry_after: int = 1
    headers: dict[str, str] | None = None


class CounterStoreUnavailableError(Exception):
    """Raised by the shared counter store on connection, timeout or protocol errors.

    Never surfaced to clients: the backend selector recovers by switching to
    the in-process store.
    """
