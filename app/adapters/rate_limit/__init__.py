"""Rate limiting adapters.

This package provides the counter stores behind the rate limit gate: an
in-process store for single long-lived processes and a Redis store for fleets
of short-lived processes, plus the selector that chooses between them.
"""

from app.adapters.rate_limit.base import (
    AbstractWindowCounterStore,
    Namespace,
    RateLimitResult,
    WindowCount,
)
from app.adapters.rate_limit.in_memory import InMemoryWindowCounterStore
from app.adapters.rate_limit.redis_store import RedisWindowCounterStore
from app.adapters.rate_limit.selector import (
    BackendMode,
    CounterBackendSelector,
    build_backend_selector,
)

__all__ = [
    "AbstractWindowCounterStore",
    "BackendMode",
    "CounterBackendSelector",
    "InMemoryWindowCounterStore",
    "Namespace",
    "RateLimitResult",
    "RedisWindowCounterStore",
    "WindowCount",
    "build_backend_selector",
]
