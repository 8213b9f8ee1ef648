"""Bounded retry: policy validation, predicates and backoff."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conduit.errors import (
    APIError,
    ConfigurationError,
    ConnectionLostError,
    ProtocolError,
    RateLimitError,
    RequestTimeoutError,
)
from conduit.retry import (
    RetryPolicy,
    _compute_backoff_delay,
    is_retryable,
    retry_async,
    submission_retry_predicate,
)

pytestmark = pytest.mark.unit

_FAST = RetryPolicy(initial_delay_s=0, jitter=False)


# =============================================================================
# Policy
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"initial_delay_s": -1},
        {"backoff_multiplier": 0},
        {"max_delay_s": -1},
        {"max_elapsed_s": -1},
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(
        initial_delay_s=1, backoff_multiplier=2, max_delay_s=3, jitter=False
    )
    delays = [_compute_backoff_delay(policy, retry_index=i) for i in (1, 2, 3)]
    assert delays == [1, 2, 3]


def test_jittered_backoff_stays_within_base() -> None:
    policy = RetryPolicy(initial_delay_s=2, jitter=True)
    for _ in range(20):
        assert 0 <= _compute_backoff_delay(policy, retry_index=1) <= 2


# =============================================================================
# Predicates
# =============================================================================


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (APIError("x", retryable=True), True),
        (APIError("x", retryable=False, status_code=503), False),
        (APIError("x", status_code=503), True),
        (APIError("x", status_code=400), False),
        (ConfigurationError("x"), False),
        (ProtocolError("x"), False),
        (httpx.ConnectError("refused"), True),
        (TimeoutError(), True),
        (ValueError("x"), False),
        (asyncio.CancelledError(), False),
    ],
)
def test_is_retryable_uses_error_metadata(exc: BaseException, expected: bool) -> None:
    assert is_retryable(exc) is expected


def test_after_tool_results_only_rate_limits_are_retried() -> None:
    predicate = submission_retry_predicate(tools_committed=True)
    assert predicate(RateLimitError("slow", retryable=True))
    assert not predicate(RequestTimeoutError("late", retryable=True))
    assert not predicate(ConnectionLostError("reset", retryable=True))


def test_profile_can_opt_into_retries_after_tool_results() -> None:
    predicate = submission_retry_predicate(tools_committed=True, allow_after_tools=True)
    assert predicate(RequestTimeoutError("late", retryable=True))


def test_before_tool_results_all_transient_errors_are_retried() -> None:
    predicate = submission_retry_predicate(tools_committed=False)
    assert predicate(ConnectionLostError("reset", retryable=True))


# =============================================================================
# retry_async
# =============================================================================


@pytest.mark.asyncio
async def test_retry_async_retries_until_success() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise RateLimitError("slow", retryable=True)
        return "ok"

    assert await retry_async(flaky, policy=_FAST) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    calls = 0

    async def always_fails() -> None:
        nonlocal calls
        calls += 1
        raise APIError("down", retryable=True)

    with pytest.raises(APIError):
        await retry_async(
            always_fails,
            policy=RetryPolicy(max_attempts=2, initial_delay_s=0, jitter=False),
        )
    assert calls == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = 0

    async def rejected() -> None:
        nonlocal calls
        calls += 1
        raise ConfigurationError("bad key")

    with pytest.raises(ConfigurationError):
        await retry_async(rejected, policy=_FAST)
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_after_header_sets_a_floor_on_the_delay(monkeypatch) -> None:
    slept: list[float] = []

    async def fake_sleep(delay: float) -> None:
        slept.append(delay)

    monkeypatch.setattr("conduit.retry.asyncio.sleep", fake_sleep)
    calls = 0

    async def throttled() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RateLimitError("slow", retryable=True, retry_after_s=2.5)
        return "ok"

    assert await retry_async(throttled, policy=_FAST) == "ok"
    assert slept == [2.5]
