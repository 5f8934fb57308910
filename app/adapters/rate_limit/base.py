"""Rate limiter interfaces.

The gate depends on this abstraction (not the concrete implementation) so the
in-process store and the shared Redis store are interchangeable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class Namespace(str, Enum):
    """Independent quota buckets. Counters never cross namespaces."""

    PROCESSING = "processing"
    HEALTH = "health"


@dataclass(frozen=True)
class WindowCount:
    """Counter state observed by a single increment.

    Attributes:
        count: Requests seen in the current window, including this one.
        reset_at: UNIX time in seconds when the window expires.
        is_first: Whether this increment opened a new window.
    """

    count: int
    reset_at: float
    is_first: bool


@dataclass(frozen=True)
class RateLimitResult:
    """Result of evaluating a window count against a namespace quota.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractWindowCounterStore(ABC):
    """Interface for fixed-window counter backends."""

    @abstractmethod
    async def increment(self, namespace: Namespace, identity: str) -> WindowCount:
        """Count one request for ``identity`` in ``namespace``.

        Args:
            namespace: Quota bucket the request belongs to.
            identity: Client identity string (e.g., IP address).

        Returns:
            WindowCount for the window the request landed in.
        """
        raise NotImplementedError

    @abstractmethod
    async def peek(self, namespace: Namespace, identity: str) -> int:
        """Return the live count for ``identity`` without incrementing it."""
        raise NotImplementedError
