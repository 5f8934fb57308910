"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment variables are set before any app import so settings never pick
up a developer's .env file or a real Redis.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["APP_API_KEY"] = "test-api-key-123"
os.environ["RATE_LIMIT_PROCESSING_LIMIT"] = "10"
os.environ["RATE_LIMIT_HEALTH_LIMIT"] = "100"
os.environ.pop("RATE_LIMIT_REDIS_URL", None)
os.environ.pop("RATE_LIMIT_REDIS_TOKEN", None)
os.environ.pop("UPSTASH_REDIS_URL", None)
os.environ.pop("UPSTASH_REDIS_TOKEN", None)
os.environ.pop("UPSTASH_REDIS_REST_URL", None)
os.environ.pop("UPSTASH_REDIS_REST_TOKEN", None)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio
from typing import Any, Iterator

import pytest

from app.core.rate_limit import reset_rate_limit_gate


@pytest.fixture(autouse=True)
def fresh_rate_limit_gate() -> Iterator[None]:
    """Give every test its own counters and backend selection."""
    reset_rate_limit_gate()
    yield
    reset_rate_limit_gate()


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Queues INCR/TTL calls and runs them on execute(), like a MULTI block."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: list[tuple[str, str]] = []

    def incr(self, key: str) -> "FakePipeline":
        self._ops.append(("incr", key))
        return self

    def ttl(self, key: str) -> "FakePipeline":
        self._ops.append(("ttl", key))
        return self

    async def execute(self) -> list[Any]:
        self._redis.calls.append("pipeline")
        if self._redis.fail_with is not None:
            raise self._redis.fail_with
        return [self._redis.apply(op, key) for op, key in self._ops]


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis with INCR/EXPIRE/TTL semantics.

    Set ``fail_with`` to an exception to make every command raise it, and
    ``ping_delay`` to hold PING open long enough for callers to pile up.
    """

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.values: dict[str, int] = {}
        self.expires_at: dict[str, float] = {}
        self.fail_with: BaseException | None = None
        self.calls: list[str] = []
        self.closed = False
        self.ping_delay = 0.0

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and self.clock() >= deadline:
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    def apply(self, op: str, key: str) -> int:
        self._purge(key)
        if op == "incr":
            self.values[key] = self.values.get(key, 0) + 1
            return self.values[key]
        if op == "ttl":
            if key not in self.values:
                return -2
            if key not in self.expires_at:
                return -1
            return int(self.expires_at[key] - self.clock())
        raise ValueError(op)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        await self._maybe_fail("ping")
        if self.ping_delay:
            await asyncio.sleep(self.ping_delay)
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        await self._maybe_fail("expire")
        self._purge(key)
        if key not in self.values:
            return False
        self.expires_at[key] = self.clock() + seconds
        return True

    async def get(self, key: str) -> str | None:
        await self._maybe_fail("get")
        self._purge(key)
        value = self.values.get(key)
        return str(value) if value is not None else None

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)
