"""Rate limiting gate and FastAPI dependencies.

This module wires the counter stores and quota policies into the HTTP layer.

Per request: resolve the client identity, count the request in the route's
namespace, evaluate the namespace quota, then either let the request through
with X-RateLimit-* headers or reject it with 429.

Namespaces:
- processing: both image processing routes (UI and public API) share it, so
  switching entry points does not buy extra quota.
- health: health checks, counted separately.

If the limiter itself fails unexpectedly the request is forwarded (fail open)
and the event is logged and counted. Set RATE_LIMIT_FAIL_OPEN=false to answer
503 instead.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable

from fastapi import Request

from app.adapters.rate_limit.base import Namespace, RateLimitResult
from app.adapters.rate_limit.selector import CounterBackendSelector, build_backend_selector
from app.core.client_identity import hash_identity, resolve_client_identity
from app.core.config import settings
from app.core.errors import RateLimitExceededAppError, RateLimitUnavailableAppError
from app.services.quota_policy import QuotaPolicy, build_quota_policies

logger = logging.getLogger(__name__)

RATE_LIMIT_EXCEEDED_MESSAGE = "Too many requests. Please try again later."

# request.state attribute holding the X-RateLimit-* headers of the current request
RATE_LIMIT_HEADERS_STATE = "rate_limit_headers"


class RateLimitGate:
    """Evaluates requests against per-namespace quotas.

    Attributes:
        fail_open_events: Number of requests forwarded because the limiter failed.
    """

    def __init__(
        self,
        *,
        selector: CounterBackendSelector,
        policies: dict[Namespace, QuotaPolicy],
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.selector = selector
        self._policies = policies
        self._fail_open = fail_open
        self._clock = clock
        self.fail_open_events = 0

    def policy(self, namespace: Namespace) -> QuotaPolicy:
        return self._policies[namespace]

    async def check(self, namespace: Namespace, request: Request) -> RateLimitResult | None:
        """Count the request and decide whether it may proceed.

        Args:
            namespace: Quota bucket of the route.
            request: Incoming request.

        Returns:
            RateLimitResult, or None when the limiter failed and the request
            is forwarded without a decision.

        Raises:
            RateLimitUnavailableAppError: Limiter failed and fail-open is disabled.
        """
        identity = None
        try:
            identity = resolve_client_identity(request)
            window = await self.selector.increment(namespace, identity)
            result = self._policies[namespace].evaluate(window, self._clock())
        except Exception as exc:
            return self._handle_internal_error(namespace, identity, exc)

        log_extra = {
            "namespace": namespace.value,
            "identity_hash": hash_identity(identity),
            "limit": result.limit,
            "remaining": result.remaining,
            "reset_at": result.reset_at,
            "backend": self.selector.mode.value if self.selector.mode else None,
        }
        if result.allowed:
            logger.info("rate_limit.allowed", extra=log_extra)
        else:
            logger.warning(
                "rate_limit.exceeded",
                extra={**log_extra, "retry_after_s": result.retry_after_seconds},
            )
        return result

    def _handle_internal_error(
        self, namespace: Namespace, identity: str | None, exc: Exception
    ) -> None:
        self.fail_open_events += 1
        logger.error(
            "rate_limit.fail_open",
            exc_info=exc,
            extra={
                "namespace": namespace.value,
                "identity_hash": hash_identity(identity) if identity else None,
                "error_type": type(exc).__name__,
                "fail_open": self._fail_open,
                "fail_open_events": self.fail_open_events,
            },
        )
        if not self._fail_open:
            raise RateLimitUnavailableAppError(
                code="rate_limit_unavailable",
                message="Service temporarily unavailable. Please try again later.",
            ) from exc
        return None


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Build the X-RateLimit-* headers reported on every gated response."""

    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
        "X-RateLimit-Reset": str(result.reset_at),
    }


_gate: RateLimitGate | None = None
_gate_config: tuple | None = None


def _current_config() -> tuple:
    cfg = settings.rate_limit
    return (
        cfg.processing_limit,
        cfg.processing_window_seconds,
        cfg.health_limit,
        cfg.health_window_seconds,
        cfg.redis_url,
        cfg.redis_token,
        cfg.key_prefix,
        cfg.fail_open,
    )


def get_rate_limit_gate() -> RateLimitGate:
    """Return the process-wide gate instance.

    The instance is cached in-module to preserve counters and the backend mode
    across requests. If configuration changes (primarily in tests), the gate
    is rebuilt.

    Returns:
        RateLimitGate: Configured gate instance.
    """

    global _gate, _gate_config

    config = _current_config()
    if _gate is None or _gate_config != config:
        _gate = RateLimitGate(
            selector=build_backend_selector(settings.rate_limit),
            policies=build_quota_policies(settings.rate_limit),
            fail_open=settings.rate_limit.fail_open,
        )
        _gate_config = config

    return _gate


def install_rate_limit_gate(gate: RateLimitGate) -> None:
    """Replace the process-wide gate (tests, custom clocks or clients)."""

    global _gate, _gate_config
    _gate = gate
    _gate_config = _current_config()


def reset_rate_limit_gate() -> None:
    """Drop the process-wide gate; the next request builds a new one."""

    global _gate, _gate_config
    _gate = None
    _gate_config = None


async def shutdown_rate_limit_gate() -> None:
    """Close backend connections held by the process-wide gate."""

    if _gate is not None:
        await _gate.selector.aclose()
    reset_rate_limit_gate()


def rate_limit_dependency(
    namespace: Namespace,
) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency enforcing the quota of ``namespace``.

    The decision's headers are stored on ``request.state`` and copied onto
    whatever response the request ends with (see
    ``app.core.middleware.rate_limit_headers_middleware``), so a 401, 400 or
    500 raised after the gate still reports the quota.

    Args:
        namespace: Quota bucket the guarded routes consume.

    Returns:
        Async dependency that records rate limit headers for the response, or
        raises RateLimitExceededAppError (rendered as 429).
    """

    async def enforce_rate_limit(request: Request) -> None:
        if not settings.rate_limit.enabled:
            return

        gate = get_rate_limit_gate()
        result = await gate.check(namespace, request)

        if result is None:
            setattr(
                request.state,
                RATE_LIMIT_HEADERS_STATE,
                {"X-RateLimit-Limit": str(gate.policy(namespace).limit)},
            )
            return

        headers = rate_limit_headers(result)
        setattr(request.state, RATE_LIMIT_HEADERS_STATE, headers)
        if result.allowed:
            return

        retry_after = result.retry_after_seconds or 1
        raise RateLimitExceededAppError(
            code="rate_limit_exceeded",
            message=RATE_LIMIT_EXCEEDED_MESSAGE,
            retry_after=retry_after,
            headers={**headers, "Retry-After": str(retry_after)},
        )

    enforce_rate_limit.__name__ = f"enforce_{namespace.value}_rate_limit"
    return enforce_rate_limit


enforce_processing_rate_limit = rate_limit_dependency(Namespace.PROCESSING)
enforce_health_rate_limit = rate_limit_dependency(Namespace.HEALTH)
