"""Tests for retry classification and the retry engine."""

from __future__ import annotations

import asyncio
import unittest

import httpx
import pytest

from itemsync.auth.errors import AuthError, AuthErrorType
from itemsync.core.backoff import BackoffStrategy
from itemsync.security.rate_limiter import RateLimitExceeded
from itemsync.utils.retry_utils import (
    RetryableErrorType,
    RetryEngine,
    RetryPolicy,
    classify_error,
    extract_status_code,
    is_transient_error,
    with_retry,
)
from tests.conftest import HttpError, SleepRecorder


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/items")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class _Flaky:
    """Fails with the queued errors, then returns ``value``."""

    def __init__(self, errors: list[Exception], value: str = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (429, RetryableErrorType.RATE_LIMIT),
        (408, RetryableErrorType.TIMEOUT),
        (401, RetryableErrorType.AUTH_EXPIRED),
        (500, RetryableErrorType.SERVER_ERROR),
        (502, RetryableErrorType.SERVER_ERROR),
        (503, RetryableErrorType.SERVER_ERROR),
        (504, RetryableErrorType.SERVER_ERROR),
        (400, None),
        (403, None),
        (404, None),
        (422, None),
    ],
)
def test_classify_by_status_code(status, expected):
    assert classify_error(HttpError(status)) is expected
    assert classify_error(_status_error(status)) is expected


def test_extract_status_code_reads_response():
    assert extract_status_code(_status_error(503)) == 503
    assert extract_status_code(ValueError("nope")) is None


def test_classify_transport_errors():
    request = httpx.Request("GET", "https://api.example.com")
    assert classify_error(httpx.ConnectError("refused", request=request)) is (
        RetryableErrorType.NETWORK
    )
    assert classify_error(httpx.ReadTimeout("slow", request=request)) is (
        RetryableErrorType.TIMEOUT
    )
    assert classify_error(ConnectionResetError()) is RetryableErrorType.NETWORK
    assert classify_error(TimeoutError()) is RetryableErrorType.TIMEOUT


def test_validation_errors_are_permanent():
    assert classify_error(ValueError("connection string malformed")) is None
    assert classify_error(TypeError("bad")) is None
    assert not is_transient_error(KeyError("missing"))


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Request timed out", RetryableErrorType.TIMEOUT),
        ("Too Many Requests", RetryableErrorType.RATE_LIMIT),
        ("Unauthorized", RetryableErrorType.AUTH_EXPIRED),
        ("socket error: ECONNRESET", RetryableErrorType.NETWORK),
        ("Service Unavailable", RetryableErrorType.SERVER_ERROR),
        ("something odd happened", None),
    ],
)
def test_classify_by_message(message, expected):
    assert classify_error(RuntimeError(message)) is expected


def test_auth_errors_classify_by_type():
    network = AuthError(AuthErrorType.NETWORK_ERROR, "offline", "p1")
    expired = AuthError(AuthErrorType.TOKEN_EXPIRED, "expired", "p1")
    invalid = AuthError(AuthErrorType.INVALID_CREDENTIALS, "nope", "p1")
    assert classify_error(network) is RetryableErrorType.NETWORK
    assert classify_error(expired) is RetryableErrorType.AUTH_EXPIRED
    assert classify_error(invalid) is None


def test_rate_limit_exceeded_is_retryable():
    assert classify_error(RateLimitExceeded("p1", 2.0)) is RetryableErrorType.RATE_LIMIT


def test_policy_rejects_negative_retries():
    with pytest.raises(ValueError, match="max_retries"):
        RetryPolicy(max_retries=-1)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestRetryEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.sleep = SleepRecorder()
        self.engine = RetryEngine(sleep=self.sleep)

    async def test_succeeds_after_two_failures_with_constant_backoff(self) -> None:
        op = _Flaky([ConnectionError("reset"), ConnectionError("reset")])
        policy = RetryPolicy(
            max_retries=2, strategy=BackoffStrategy.CONSTANT, initial_delay=0.01, jitter=False
        )

        result = await self.engine.execute(op, policy)

        assert result.success
        assert result.value == "ok"
        assert result.attempts == 3
        assert self.sleep.delays == [0.01, 0.01]

    async def test_always_failing_operation_runs_max_retries_plus_one(self) -> None:
        op = _Flaky([HttpError(503) for _ in range(10)])
        policy = RetryPolicy(max_retries=4, initial_delay=0.0, jitter=False)

        result = await self.engine.execute(op, policy)

        assert not result.success
        assert result.attempts == 5
        assert op.calls == 5
        assert isinstance(result.error, HttpError)
        assert result.error_type is RetryableErrorType.SERVER_ERROR

    async def test_zero_retries_means_single_attempt(self) -> None:
        op = _Flaky([ConnectionError("reset")])
        result = await self.engine.execute(op, RetryPolicy(max_retries=0))

        assert not result.success
        assert result.attempts == 1
        assert self.sleep.delays == []

    async def test_permanent_error_is_not_retried(self) -> None:
        op = _Flaky([ValueError("bad payload")])
        result = await self.engine.execute(op, RetryPolicy(max_retries=5))

        assert not result.success
        assert result.attempts == 1
        assert result.error_type is None

    async def test_exponential_delays_are_capped(self) -> None:
        op = _Flaky([HttpError(500) for _ in range(5)])
        policy = RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=5.0, jitter=False)

        await self.engine.execute(op, policy)

        assert self.sleep.delays == [1.0, 2.0, 4.0, 5.0]

    async def test_custom_predicate_overrides_classification(self) -> None:
        op = _Flaky([ValueError("retry me anyway")])
        policy = RetryPolicy(max_retries=1, initial_delay=0.0, is_retryable=lambda e: True)

        result = await self.engine.execute(op, policy)

        assert result.success
        assert result.attempts == 2

    async def test_on_retry_receives_attempt_delay_and_error(self) -> None:
        seen: list[tuple[int, float, str]] = []

        async def on_retry(attempt: int, delay: float, error: Exception) -> None:
            seen.append((attempt, delay, str(error)))

        op = _Flaky([HttpError(429, "slow down"), HttpError(429, "slow down")])
        policy = RetryPolicy(
            max_retries=3, initial_delay=0.5, jitter=False, on_retry=on_retry
        )

        await self.engine.execute(op, policy)

        assert seen == [(1, 0.5, "slow down"), (2, 1.0, "slow down")]

    async def test_failing_on_retry_callback_does_not_abort(self) -> None:
        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            msg = "callback broke"
            raise RuntimeError(msg)

        op = _Flaky([ConnectionError("reset")])
        result = await self.engine.execute(
            op, RetryPolicy(max_retries=1, initial_delay=0.0, on_retry=on_retry)
        )

        assert result.success

    async def test_cancellation_propagates(self) -> None:
        async def cancelled() -> None:
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await self.engine.execute(cancelled, RetryPolicy(max_retries=3))

    async def test_retry_on_only_retries_matching_type(self) -> None:
        server = _Flaky([HttpError(503)])
        limited = _Flaky([HttpError(429)])
        policy = RetryPolicy(max_retries=2, initial_delay=0.0)

        server_result = await self.engine.retry_on(server, RetryableErrorType.RATE_LIMIT, policy)
        limited_result = await self.engine.retry_on(limited, RetryableErrorType.RATE_LIMIT, policy)

        assert not server_result.success
        assert server_result.attempts == 1
        assert limited_result.success
        assert limited_result.attempts == 2

    async def test_retry_on_transient_matches_any_category(self) -> None:
        op = _Flaky([HttpError(503), ConnectionError("reset"), HttpError(429)])
        result = await self.engine.retry_on(
            op, RetryableErrorType.TRANSIENT, RetryPolicy(max_retries=3, initial_delay=0.0)
        )

        assert result.success
        assert result.attempts == 4

    async def test_wrap_forwards_arguments(self) -> None:
        calls: list[tuple[int, str]] = []

        async def fetch(page: int, *, cursor: str) -> str:
            calls.append((page, cursor))
            if len(calls) == 1:
                raise ConnectionError("reset")
            return f"{page}:{cursor}"

        wrapped = self.engine.wrap(fetch, RetryPolicy(max_retries=2, initial_delay=0.0))
        result = await wrapped(3, cursor="abc")

        assert result.value == "3:abc"
        assert calls == [(3, "abc"), (3, "abc")]

    async def test_with_retry_returns_value_or_raises_last_error(self) -> None:
        value = await with_retry(
            _Flaky([ConnectionError("reset")]),
            RetryPolicy(max_retries=1, initial_delay=0.0),
            engine=self.engine,
        )
        assert value == "ok"

        with pytest.raises(HttpError):
            await with_retry(
                _Flaky([HttpError(500), HttpError(500)]),
                RetryPolicy(max_retries=1, initial_delay=0.0),
                engine=self.engine,
            )

    async def test_default_policy_is_used_when_none_given(self) -> None:
        engine = RetryEngine(RetryPolicy(max_retries=1, initial_delay=0.0), sleep=self.sleep)
        result = await engine.execute(_Flaky([HttpError(503), HttpError(503)]))

        assert result.attempts == 2
        assert engine.default_policy.max_retries == 1


if __name__ == "__main__":
    unittest.main()
