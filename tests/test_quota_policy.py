"""Unit tests for per-namespace quota evaluation."""

import pytest

from app.adapters.rate_limit.base import Namespace, WindowCount
from app.core.config import RateLimitSettings
from app.services.quota_policy import QuotaPolicy, build_quota_policies

NOW = 1_700_000_000.0


def _window(count: int, reset_in: float = 3600.0) -> WindowCount:
    return WindowCount(count=count, reset_at=NOW + reset_in, is_first=count == 1)


def test_remaining_counts_down_to_zero() -> None:
    policy = QuotaPolicy(limit=10, window_seconds=3600)

    remaining = [policy.evaluate(_window(n), NOW).remaining for n in range(1, 11)]

    assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]


def test_request_at_limit_is_allowed() -> None:
    result = QuotaPolicy(limit=10, window_seconds=3600).evaluate(_window(10), NOW)

    assert result.allowed is True
    assert result.remaining == 0
    assert result.retry_after_seconds is None


def test_request_over_limit_is_denied_with_retry_hint() -> None:
    result = QuotaPolicy(limit=10, window_seconds=3600).evaluate(_window(11, reset_in=90.2), NOW)

    assert result.allowed is False
    assert result.limit == 10
    assert result.remaining == 0
    assert result.retry_after_seconds == 91
    assert result.reset_at == int(NOW + 91)


@pytest.mark.parametrize("reset_in", [0.0, -5.0, 0.0001])
def test_retry_after_is_at_least_one_second(reset_in: float) -> None:
    result = QuotaPolicy(limit=1, window_seconds=60).evaluate(_window(2, reset_in=reset_in), NOW)

    assert result.allowed is False
    assert result.retry_after_seconds >= 1


@pytest.mark.parametrize("kwargs", [{"limit": 0, "window_seconds": 60}, {"limit": 1, "window_seconds": 0}])
def test_invalid_policy_rejected(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        QuotaPolicy(**kwargs)


def test_policies_built_per_namespace() -> None:
    rate_settings = RateLimitSettings.model_construct(
        processing_limit=7,
        processing_window_seconds=120,
        health_limit=50,
        health_window_seconds=3600,
    )

    policies = build_quota_policies(rate_settings)

    assert policies[Namespace.PROCESSING] == QuotaPolicy(limit=7, window_seconds=120)
    assert policies[Namespace.HEALTH] == QuotaPolicy(limit=50, window_seconds=3600)
