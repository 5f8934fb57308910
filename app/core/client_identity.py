"""Client identity extraction for rate limiting.

The identity is the leftmost address of ``X-Forwarded-For`` as written by the
nearest proxy, falling back to the transport peer address. The header value is
trusted verbatim: a client talking to the app without a proxy in front can
choose its own identity.
"""

from __future__ import annotations

import hashlib
import re

from fastapi import Request

FORWARDED_FOR_HEADER = "x-forwarded-for"
UNKNOWN_IDENTITY = "unknown"

_KEY_UNSAFE_CHARS = re.compile(r"[:.]")


def resolve_client_identity(request: Request) -> str:
    """Return a non-empty identity string for the request.

    Args:
        request: Incoming FastAPI request.

    Returns:
        First entry of X-Forwarded-For, else the peer host, else "unknown".

    Examples:
        X-Forwarded-For: "9.9.9.9, 10.0.0.1" -> "9.9.9.9"
    """
    forwarded_for = request.headers.get(FORWARDED_FOR_HEADER)
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    client = request.client
    if client is not None and client.host:
        return client.host

    return UNKNOWN_IDENTITY


def sanitize_identity(identity: str) -> str:
    """Make an identity safe for use inside a Redis key.

    Colons (IPv6, key separators) and dots (IPv4) become dashes. The mapping
    is lossy; collisions are accepted.
    """
    return _KEY_UNSAFE_CHARS.sub("-", identity)


def hash_identity(identity: str) -> str:
    """Hash an identity for logging without exposing client addresses."""
    return hashlib.sha256(identity.encode()).hexdigest()[:16]
