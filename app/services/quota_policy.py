"""Per-namespace quota evaluation.

Turns a counter observation into an allow/deny decision with the metadata the
gate reports in X-RateLimit-* headers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from app.adapters.rate_limit.base import Namespace, RateLimitResult, WindowCount
from app.core.config import RateLimitSettings


@dataclass(frozen=True)
class QuotaPolicy:
    """Limit and window of one namespace.

    Attributes:
        limit: Maximum requests allowed per window.
        window_seconds: Window length in seconds.
    """

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

    def evaluate(self, window: WindowCount, now: float) -> RateLimitResult:
        """Decide whether the request that produced ``window`` may proceed.

        Args:
            window: Counter state after counting this request.
            now: Current UNIX time in seconds.

        Returns:
            RateLimitResult; ``retry_after_seconds`` is at least 1 when denied.
        """
        allowed = window.count <= self.limit
        remaining = max(0, self.limit - window.count)
        reset_at = int(math.ceil(window.reset_at))

        if allowed:
            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=remaining,
                reset_at=reset_at,
                retry_after_seconds=None,
            )

        # Clock skew between processes can put reset_at in the past
        retry_after = max(1, int(math.ceil(window.reset_at - now)))
        return RateLimitResult(
            allowed=False,
            limit=self.limit,
            remaining=remaining,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )


def build_quota_policies(rate_settings: RateLimitSettings) -> dict[Namespace, QuotaPolicy]:
    """Build the policy table for all namespaces from settings."""

    return {
        Namespace.PROCESSING: QuotaPolicy(
            limit=rate_settings.processing_limit,
            window_seconds=rate_settings.processing_window_seconds,
        ),
        Namespace.HEALTH: QuotaPolicy(
            limit=rate_settings.health_limit,
            window_seconds=rate_settings.health_window_seconds,
        ),
    }
