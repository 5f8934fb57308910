"""API key authentication for the public processing API.

The key is a shared secret from APP_API_KEY (or API_KEY). A comma-separated
value configures several keys, which allows rotating a key without downtime.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Annotated

from fastapi import Header, Request

from app.core.config import settings
from app.core.errors import AuthenticationAppError, ConfigurationAppError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
# Header name used by clients written against the first version of the API
LEGACY_API_KEY_HEADER = "API_KEY"


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Parse comma-separated API keys into a set.

    Args:
        keys_string: Comma-separated string of API keys, or None.

    Returns:
        Set of trimmed, non-empty API keys.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ")
        {'key1', 'key2', 'key3'}
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def api_key_configured() -> bool:
    """Whether at least one API key is configured."""
    return bool(parse_api_keys(settings.app.api_key))


def validate_api_key(provided_key: str | None) -> None:
    """Validate that provided API key matches a configured key.

    Pure validation logic without FastAPI dependencies for easy testing.
    Comparison is constant-time.

    Args:
        provided_key: API key to validate.

    Raises:
        ConfigurationAppError: If no key is configured on the server.
        AuthenticationAppError: If the key is missing or does not match.
    """
    valid_keys = parse_api_keys(settings.app.api_key)

    if not valid_keys:
        # Do not reveal the misconfiguration to the caller; log it internally
        logger.error("auth.api_key_not_configured")
        raise ConfigurationAppError(
            code="api_key_not_configured",
            message="Server error: API key not configured.",
        )

    if not provided_key:
        logger.warning("auth.missing_key", extra={"api_key_present": False})
        raise AuthenticationAppError(code="unauthorized", message="Unauthorized")

    if not any(hmac.compare_digest(provided_key.encode(), key.encode()) for key in valid_keys):
        logger.warning(
            "auth.invalid_key",
            extra={
                "api_key_present": True,
                "api_key_hash": hashlib.sha256(provided_key.encode()).hexdigest()[:16],
            },
        )
        raise AuthenticationAppError(code="unauthorized", message="Unauthorized")


async def verify_api_key(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias=API_KEY_HEADER)] = None,
) -> None:
    """FastAPI dependency for API key authentication.

    Reads ``X-API-Key``, falling back to the legacy ``API_KEY`` header.

    Usage:
        @router.post("/protected", dependencies=[Depends(verify_api_key)])

    Raises:
        AuthenticationAppError: 401 when the key is missing or invalid.
        ConfigurationAppError: 500 when the server has no key configured.
    """
    validate_api_key(x_api_key or request.headers.get(LEGACY_API_KEY_HEADER))
    logger.debug("auth.success", extra={"api_key_present": True})
