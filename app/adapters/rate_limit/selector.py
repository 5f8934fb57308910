"""Backend selection for the rate limit counter store.

The selector owns the process-wide backend mode. It picks the shared Redis
store lazily, on the first request, when connection parameters are configured
and a PING succeeds; otherwise it uses the in-process store. A Redis failure
at any later point downgrades the process to the in-process store for the rest
of its lifetime. There is no path back to Redis without a restart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable

from redis.asyncio import Redis

from app.adapters.rate_limit.base import Namespace, WindowCount
from app.adapters.rate_limit.in_memory import InMemoryWindowCounterStore
from app.adapters.rate_limit.redis_store import RedisWindowCounterStore, create_redis_client
from app.core.client_identity import hash_identity
from app.core.config import RateLimitSettings
from app.core.errors import CounterStoreUnavailableError

logger = logging.getLogger(__name__)


class BackendMode(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


RemoteStoreFactory = Callable[[], RedisWindowCounterStore]


class CounterBackendSelector:
    """Chooses and dispatches to the active counter store.

    Attributes:
        downgrade_count: Number of remote-to-local downgrades (0 or 1).
    """

    def __init__(
        self,
        *,
        local: InMemoryWindowCounterStore,
        remote_factory: RemoteStoreFactory | None = None,
    ) -> None:
        """Initialize the selector.

        Args:
            local: In-process store, always available as the fallback.
            remote_factory: Builds the Redis store; None when not configured.
        """
        self._local = local
        self._remote_factory = remote_factory
        self._remote: RedisWindowCounterStore | None = None
        self._mode: BackendMode | None = None
        self._init_lock = asyncio.Lock()
        self.downgrade_count = 0

    @property
    def mode(self) -> BackendMode | None:
        """Active backend mode, or None before the first request."""
        return self._mode

    @property
    def initialized(self) -> bool:
        return self._mode is not None

    @property
    def local(self) -> InMemoryWindowCounterStore:
        return self._local

    async def ensure_selected(self) -> BackendMode:
        """Select the backend once; later calls return the cached mode."""
        if self._mode is not None:
            return self._mode

        async with self._init_lock:
            if self._mode is None:
                self._mode = await self._select()
        return self._mode

    async def _select(self) -> BackendMode:
        if self._remote_factory is None:
            logger.info(
                "rate_limit.backend_selected",
                extra={"mode": BackendMode.LOCAL.value, "reason": "remote_not_configured"},
            )
            return BackendMode.LOCAL

        remote: RedisWindowCounterStore | None = None
        try:
            remote = self._remote_factory()
            await remote.ping()
        except Exception as exc:
            # Any failure to build or reach the store settles on local for good
            logger.warning(
                "rate_limit.backend_selected",
                extra={
                    "mode": BackendMode.LOCAL.value,
                    "reason": "remote_probe_failed",
                    "error_type": type(exc).__name__,
                },
            )
            if remote is not None:
                await remote.aclose()
            return BackendMode.LOCAL

        self._remote = remote
        logger.info(
            "rate_limit.backend_selected",
            extra={"mode": BackendMode.REMOTE.value, "reason": "remote_probe_ok"},
        )
        return BackendMode.REMOTE

    def downgrade(self, reason: str) -> None:
        """Switch to the in-process store for the rest of the process lifetime."""
        if self._mode is BackendMode.LOCAL:
            return

        self._mode = BackendMode.LOCAL
        self.downgrade_count += 1
        logger.warning(
            "rate_limit.backend_downgraded",
            extra={"from_mode": BackendMode.REMOTE.value, "to_mode": BackendMode.LOCAL.value, "reason": reason},
        )

    async def increment(self, namespace: Namespace, identity: str) -> WindowCount:
        """Count a request on the active store, falling back to local on failure."""
        mode = await self.ensure_selected()

        if mode is BackendMode.REMOTE and self._remote is not None:
            try:
                return await self._remote.increment(namespace, identity)
            except CounterStoreUnavailableError as exc:
                self.downgrade(str(exc))

        return await self._local.increment(namespace, identity)

    async def status(self, namespace: Namespace, identity: str) -> dict[str, Any]:
        """Report the current count for an identity (monitoring and tests)."""
        mode = await self.ensure_selected()
        status: dict[str, Any] = {
            "mode": mode.value,
            "namespace": namespace.value,
            "identity_hash": hash_identity(identity),
        }

        if mode is BackendMode.REMOTE and self._remote is not None:
            try:
                status["count"] = await self._remote.peek(namespace, identity)
            except CounterStoreUnavailableError as exc:
                status["error"] = str(exc)
            return status

        status["count"] = await self._local.peek(namespace, identity)
        status["reset_at"] = self._local.reset_at(namespace, identity)
        return status

    async def aclose(self) -> None:
        if self._remote is not None:
            await self._remote.aclose()
            self._remote = None


def build_backend_selector(
    rate_settings: RateLimitSettings,
    *,
    clock: Callable[[], float] = time.time,
    client_factory: Callable[..., Redis] = create_redis_client,
) -> CounterBackendSelector:
    """Build a selector from rate limit settings.

    Args:
        rate_settings: Resolved rate limit settings.
        clock: Time source shared by both stores.
        client_factory: Builds the Redis client; replaced in tests.

    Returns:
        Selector with a local store and, when configured, a remote factory.
    """
    windows = {
        Namespace.PROCESSING: rate_settings.processing_window_seconds,
        Namespace.HEALTH: rate_settings.health_window_seconds,
    }
    local = InMemoryWindowCounterStore(windows=windows, clock=clock)

    if not rate_settings.remote_configured:
        return CounterBackendSelector(local=local)

    def remote_factory() -> RedisWindowCounterStore:
        client = client_factory(
            rate_settings.redis_url,
            rate_settings.redis_token,
            timeout_seconds=rate_settings.redis_timeout_seconds,
        )
        return RedisWindowCounterStore(
            client,
            windows=windows,
            key_prefix=rate_settings.key_prefix,
            timeout_seconds=rate_settings.redis_timeout_seconds,
            clock=clock,
        )

    return CounterBackendSelector(local=local, remote_factory=remote_factory)
