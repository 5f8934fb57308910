"""Tests for counter backend selection and the one-way downgrade to local."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.adapters.rate_limit.base import Namespace
from app.adapters.rate_limit.selector import BackendMode, build_backend_selector
from app.core.config import RateLimitSettings
from app.services.quota_policy import QuotaPolicy
from conftest import FakeClock, FakeRedis


def _settings(**overrides) -> RateLimitSettings:
    values = {
        "processing_limit": 10,
        "health_limit": 100,
        "redis_url": "rediss://default@example.upstash.io:6379",
        "redis_token": "secret-token",
    }
    values.update(overrides)
    return RateLimitSettings.model_construct(**values)


def _factory_for(fake: FakeRedis):
    created: list[tuple] = []

    def factory(url, token, *, timeout_seconds):
        created.append((url, token, timeout_seconds))
        return fake

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.mark.asyncio
async def test_local_when_remote_not_configured(clock: FakeClock) -> None:
    def factory(*args, **kwargs):
        raise AssertionError("no client must be built without configuration")

    selector = build_backend_selector(
        _settings(redis_url=None, redis_token=None), clock=clock, client_factory=factory
    )
    assert selector.mode is None
    assert selector.initialized is False

    result = await selector.increment(Namespace.PROCESSING, "1.2.3.4")

    assert selector.mode is BackendMode.LOCAL
    assert result.count == 1


@pytest.mark.asyncio
async def test_token_alone_is_not_enough(clock: FakeClock, fake_redis: FakeRedis) -> None:
    factory = _factory_for(fake_redis)
    selector = build_backend_selector(_settings(redis_url=None), clock=clock, client_factory=factory)

    assert await selector.ensure_selected() is BackendMode.LOCAL
    assert factory.created == []


@pytest.mark.asyncio
async def test_remote_selected_when_probe_succeeds(clock: FakeClock, fake_redis: FakeRedis) -> None:
    factory = _factory_for(fake_redis)
    selector = build_backend_selector(_settings(), clock=clock, client_factory=factory)

    await selector.increment(Namespace.PROCESSING, "1.2.3.4")
    await selector.increment(Namespace.PROCESSING, "1.2.3.4")

    assert selector.mode is BackendMode.REMOTE
    assert fake_redis.calls[0] == "ping"
    assert fake_redis.values["ratelimit:processing:1-2-3-4"] == 2
    assert factory.created == [
        ("rediss://default@example.upstash.io:6379", "secret-token", 2.0)
    ]


@pytest.mark.asyncio
async def test_probe_failure_selects_local(clock: FakeClock, fake_redis: FakeRedis) -> None:
    fake_redis.fail_with = RedisConnectionError("refused")
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))

    assert await selector.ensure_selected() is BackendMode.LOCAL
    assert fake_redis.closed is True

    result = await selector.increment(Namespace.PROCESSING, "1.2.3.4")
    assert result.count == 1
    assert fake_redis.calls == ["ping"]


@pytest.mark.asyncio
async def test_invalid_url_selects_local(clock: FakeClock) -> None:
    def factory(url, token, *, timeout_seconds):
        raise ValueError("Redis URL must specify one of the following schemes")

    selector = build_backend_selector(_settings(redis_url="not-a-url"), clock=clock, client_factory=factory)

    assert await selector.ensure_selected() is BackendMode.LOCAL


@pytest.mark.asyncio
async def test_selection_runs_once(clock: FakeClock, fake_redis: FakeRedis) -> None:
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))

    for _ in range(3):
        await selector.ensure_selected()

    assert fake_redis.calls.count("ping") == 1


@pytest.mark.asyncio
async def test_concurrent_first_requests_probe_once(clock: FakeClock, fake_redis: FakeRedis) -> None:
    fake_redis.ping_delay = 0.01
    factory = _factory_for(fake_redis)
    selector = build_backend_selector(_settings(), clock=clock, client_factory=factory)

    results = await asyncio.gather(
        *[selector.increment(Namespace.PROCESSING, "1.2.3.4") for _ in range(10)]
    )

    assert selector.mode is BackendMode.REMOTE
    assert fake_redis.calls.count("ping") == 1
    assert len(factory.created) == 1
    assert sorted(r.count for r in results) == list(range(1, 11))
    assert (await selector.status(Namespace.PROCESSING, "1.2.3.4"))["count"] == 10


@pytest.mark.asyncio
async def test_unexpected_factory_error_settles_on_local(clock: FakeClock) -> None:
    attempts = []

    def factory(url, token, *, timeout_seconds):
        attempts.append(url)
        raise TypeError("unexpected keyword argument")

    selector = build_backend_selector(_settings(), clock=clock, client_factory=factory)

    first = await selector.increment(Namespace.PROCESSING, "1.2.3.4")
    second = await selector.increment(Namespace.PROCESSING, "1.2.3.4")

    assert selector.mode is BackendMode.LOCAL
    assert len(attempts) == 1
    assert (first.count, second.count) == (1, 2)


@pytest.mark.asyncio
async def test_unexpected_probe_error_closes_client(clock: FakeClock, fake_redis: FakeRedis) -> None:
    fake_redis.fail_with = RuntimeError("protocol confusion")
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))

    assert await selector.ensure_selected() is BackendMode.LOCAL
    assert fake_redis.closed is True


@pytest.mark.asyncio
async def test_remote_failure_downgrades_and_counts_locally(clock: FakeClock, fake_redis: FakeRedis) -> None:
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))
    await selector.increment(Namespace.PROCESSING, "1.2.3.4")
    assert selector.mode is BackendMode.REMOTE

    fake_redis.fail_with = RedisConnectionError("connection lost")
    result = await selector.increment(Namespace.PROCESSING, "1.2.3.4")

    assert selector.mode is BackendMode.LOCAL
    assert selector.downgrade_count == 1
    # Local store starts fresh; the failed call is retried there
    assert result.count == 1

    # No way back: Redis is not consulted again even after it recovers
    fake_redis.fail_with = None
    calls_before = len(fake_redis.calls)
    result = await selector.increment(Namespace.PROCESSING, "1.2.3.4")
    assert result.count == 2
    assert len(fake_redis.calls) == calls_before
    assert selector.downgrade_count == 1


@pytest.mark.asyncio
async def test_burst_against_failing_remote_keeps_exact_quota(clock: FakeClock, fake_redis: FakeRedis) -> None:
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))
    await selector.ensure_selected()
    assert selector.mode is BackendMode.REMOTE

    fake_redis.fail_with = RedisConnectionError("connection refused")
    policy = QuotaPolicy(limit=10, window_seconds=3600)

    decisions = []
    for _ in range(15):
        window = await selector.increment(Namespace.PROCESSING, "1.2.3.4")
        decisions.append(policy.evaluate(window, clock()).allowed)

    assert decisions.count(True) == 10
    assert decisions.count(False) == 5
    assert decisions[:10] == [True] * 10


@pytest.mark.asyncio
async def test_status_reports_mode_and_count(clock: FakeClock, fake_redis: FakeRedis) -> None:
    local_selector = build_backend_selector(_settings(redis_url=None), clock=clock)
    await local_selector.increment(Namespace.HEALTH, "1.2.3.4")
    status = await local_selector.status(Namespace.HEALTH, "1.2.3.4")

    assert status["mode"] == "local"
    assert status["count"] == 1
    assert status["reset_at"] == clock.now + 3600
    assert "1.2.3.4" not in status.values()

    remote_selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))
    await remote_selector.increment(Namespace.HEALTH, "1.2.3.4")
    status = await remote_selector.status(Namespace.HEALTH, "1.2.3.4")

    assert status["mode"] == "remote"
    assert status["count"] == 1


@pytest.mark.asyncio
async def test_aclose_releases_remote_client(clock: FakeClock, fake_redis: FakeRedis) -> None:
    selector = build_backend_selector(_settings(), clock=clock, client_factory=_factory_for(fake_redis))
    await selector.ensure_selected()

    await selector.aclose()

    assert fake_redis.closed is True
