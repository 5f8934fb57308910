"""Redis-backed fixed-window counter store.

Used when several short-lived processes must agree on one count per client.
Atomicity comes from Redis itself: ``INCR`` serializes concurrent increments
and the key's TTL expires the window without manual cleanup.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import AbstractWindowCounterStore, Namespace, WindowCount
from app.core.client_identity import sanitize_identity
from app.core.errors import CounterStoreUnavailableError

logger = logging.getLogger(__name__)


def create_redis_client(url: str, token: str | None, *, timeout_seconds: float) -> Redis:
    """Build an asyncio Redis client for the counter store.

    Args:
        url: Connection URL (``redis://`` or ``rediss://``).
        token: Auth token, sent as the connection password.
        timeout_seconds: Socket connect/read timeout.

    Returns:
        Configured Redis client (connections are opened lazily).
    """
    return Redis.from_url(
        url,
        password=token,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
        decode_responses=True,
    )


class RedisWindowCounterStore(AbstractWindowCounterStore):
    """Counter store on a shared Redis-protocol service.

    Each increment runs ``INCR`` and ``TTL`` in one MULTI/EXEC round-trip.
    When the increment created the key, or the key was left without an expiry
    by an earlier interrupted call, ``EXPIRE`` sets the namespace window.

    Every call is bounded by ``timeout_seconds``. Connection errors, protocol
    errors and timeouts are raised as CounterStoreUnavailableError.
    """

    def __init__(
        self,
        client: Redis,
        *,
        windows: Mapping[Namespace, int],
        key_prefix: str = "ratelimit",
        timeout_seconds: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._windows = dict(windows)
        self._key_prefix = key_prefix
        self._timeout = timeout_seconds
        self._clock = clock

    def key_for(self, namespace: Namespace, identity: str) -> str:
        """Build the Redis key for a (namespace, identity) pair."""
        return f"{self._key_prefix}:{namespace.value}:{sanitize_identity(identity)}"

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "rate_limit.redis_error",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "timeout_s": self._timeout,
                },
            )
            raise CounterStoreUnavailableError(f"redis {operation} failed: {exc!r}") from exc

    async def ping(self) -> None:
        """Liveness probe used when selecting the backend."""
        await self._call("ping", self._client.ping())

    async def increment(self, namespace: Namespace, identity: str) -> WindowCount:
        key = self.key_for(namespace, identity)
        window_seconds = self._windows[namespace]
        now = self._clock()

        pipe = self._client.pipeline(transaction=True)
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = await self._call("incr", pipe.execute())
        count = int(count)
        ttl = int(ttl)

        if count == 1 or ttl < 0:
            await self._call("expire", self._client.expire(key, window_seconds))
            ttl = window_seconds

        return WindowCount(count=count, reset_at=now + ttl, is_first=count == 1)

    async def peek(self, namespace: Namespace, identity: str) -> int:
        value = await self._call("get", self._client.get(self.key_for(namespace, identity)))
        return int(value) if value is not None else 0

    async def aclose(self) -> None:
        """Release the client's connection pool."""
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("rate_limit.redis_close_failed", extra={"error_type": type(exc).__name__})
