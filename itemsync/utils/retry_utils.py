"""Retry engine for operations that may fail transiently.

Operations are retried with constant, linear or exponential backoff (with
optional jitter) while the raised error is classified as retryable.
``RetryEngine.execute`` never raises for ordinary exceptions; the terminal
failure is returned in a ``RetryResult``. Cancellation always propagates.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx
from pydantic import ValidationError

from itemsync.auth.errors import AuthError, AuthErrorType
from itemsync.core.backoff import BackoffStrategy, calculate_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUS_CODES = frozenset({429})
TIMEOUT_STATUS_CODES = frozenset({408})
AUTH_EXPIRED_STATUS_CODES = frozenset({401})
SERVER_ERROR_STATUS_CODES = frozenset({500, 502, 503, 504})


class RetryableErrorType(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    AUTH_EXPIRED = "auth_expired"
    # Matches any of the above in ``retry_on``.
    TRANSIENT = "transient"


_KEYWORDS = (
    (RetryableErrorType.TIMEOUT, ("timeout", "timed out")),
    (RetryableErrorType.RATE_LIMIT, ("rate limit", "too many requests")),
    (RetryableErrorType.AUTH_EXPIRED, ("unauthorized", "token expired")),
    (RetryableErrorType.NETWORK, ("network", "connection", "econnreset", "econnrefused")),
    (
        RetryableErrorType.SERVER_ERROR,
        ("service unavailable", "bad gateway", "temporarily unavailable"),
    ),
)


def extract_status_code(error: BaseException) -> int | None:
    """HTTP status carried by ``error`` (``status_code``, ``status`` or ``response``)."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException) -> RetryableErrorType | None:
    """Classify an error for retry purposes.

    Returns:
        The retryable category, or ``None`` when the error is permanent
        (validation errors, other 4xx, unrecognised errors).
    """
    if isinstance(error, AuthError):
        if error.type is AuthErrorType.NETWORK_ERROR:
            return RetryableErrorType.NETWORK
        if error.type is AuthErrorType.TOKEN_EXPIRED:
            return RetryableErrorType.AUTH_EXPIRED
        cause = error.__cause__
        return classify_error(cause) if cause is not None else None

    status = extract_status_code(error)
    if status is not None:
        if status in RATE_LIMIT_STATUS_CODES:
            return RetryableErrorType.RATE_LIMIT
        if status in TIMEOUT_STATUS_CODES:
            return RetryableErrorType.TIMEOUT
        if status in AUTH_EXPIRED_STATUS_CODES:
            return RetryableErrorType.AUTH_EXPIRED
        if status in SERVER_ERROR_STATUS_CODES:
            return RetryableErrorType.SERVER_ERROR
        return None

    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return RetryableErrorType.TIMEOUT
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return RetryableErrorType.NETWORK
    if isinstance(error, (ValidationError, ValueError, TypeError)):
        return None

    message = str(error).lower()
    for error_type, keywords in _KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type
    return None


def is_transient_error(error: BaseException) -> bool:
    """Default retry predicate: True when ``classify_error`` finds a category."""
    return classify_error(error) is not None


OnRetry = Callable[[int, float, Exception], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """How an operation is retried.

    ``max_retries`` counts retries, so an always-failing operation runs
    ``max_retries + 1`` times. ``on_retry(attempt, delay, error)`` is called
    before each backoff sleep and may be sync or async.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter: bool = True
    is_retryable: Callable[[Exception], bool] | None = None
    on_retry: OnRetry | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = "max_retries must be >= 0"
            raise ValueError(msg)
        if self.initial_delay < 0 or self.max_delay < 0:
            msg = "retry delays must be >= 0"
            raise ValueError(msg)

    def with_overrides(self, **changes: Any) -> RetryPolicy:
        return dataclasses.replace(self, **changes)

    def should_retry(self, error: Exception) -> bool:
        predicate = self.is_retryable or is_transient_error
        return bool(predicate(error))

    def delay_for(self, retry_number: int, rng: random.Random | None = None) -> float:
        return calculate_delay(
            retry_number,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            strategy=self.strategy,
            multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            rng=rng,
        )


@dataclass
class RetryResult(Generic[T]):
    success: bool
    value: T | None = None
    error: Exception | None = None
    attempts: int = 0
    total_time_seconds: float = 0.0

    @property
    def error_type(self) -> RetryableErrorType | None:
        return classify_error(self.error) if self.error is not None else None


def _operation_name(operation: Callable[..., Any]) -> str:
    return getattr(operation, "__qualname__", None) or getattr(operation, "__name__", "operation")


class RetryEngine:
    """Runs async operations under a ``RetryPolicy``."""

    def __init__(
        self,
        default_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine.

        Args:
            default_policy: Policy used when a call does not pass one
            sleep: Coroutine used for backoff delays
            rng: Random source for jitter
            clock: Monotonic time source for ``total_time_seconds``
        """
        self._default_policy = default_policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails permanently or exhausts retries."""
        policy = policy or self._default_policy
        name = _operation_name(operation)
        started = self._clock()
        attempt = 0

        while True:
            attempt += 1
            try:
                value = await operation()
            except Exception as exc:
                elapsed = self._clock() - started
                if not policy.should_retry(exc):
                    logger.debug(
                        "non_transient_error_no_retry",
                        extra={"operation": name, "error": str(exc), "attempt": attempt},
                    )
                    return RetryResult(
                        success=False, error=exc, attempts=attempt, total_time_seconds=elapsed
                    )
                if attempt > policy.max_retries:
                    logger.warning(
                        "retry_exhausted",
                        extra={"operation": name, "error": str(exc), "total_attempts": attempt},
                    )
                    return RetryResult(
                        success=False, error=exc, attempts=attempt, total_time_seconds=elapsed
                    )

                delay = policy.delay_for(attempt, self._rng)
                logger.info(
                    "retry_scheduled",
                    extra={
                        "operation": name,
                        "attempt": attempt,
                        "max_retries": policy.max_retries,
                        "delay_seconds": round(delay, 3),
                        "error_type": getattr(classify_error(exc), "value", None),
                        "error": str(exc),
                    },
                )
                await self._notify(policy, attempt, delay, exc)
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("retry_succeeded", extra={"operation": name, "total_attempts": attempt})
            return RetryResult(
                success=True,
                value=value,
                attempts=attempt,
                total_time_seconds=self._clock() - started,
            )

    def wrap(
        self,
        operation: Callable[..., Awaitable[T]],
        policy: RetryPolicy | None = None,
    ) -> Callable[..., Awaitable[RetryResult[T]]]:
        """Curry ``operation`` so every call goes through ``execute``."""

        @functools.wraps(operation)
        async def wrapper(*args: Any, **kwargs: Any) -> RetryResult[T]:
            return await self.execute(lambda: operation(*args, **kwargs), policy)

        return wrapper

    async def retry_on(
        self,
        operation: Callable[[], Awaitable[T]],
        error_type: RetryableErrorType,
        policy: RetryPolicy | None = None,
    ) -> RetryResult[T]:
        """Retry only when the error classifies as ``error_type``."""

        def matches(error: Exception) -> bool:
            classified = classify_error(error)
            if error_type is RetryableErrorType.TRANSIENT:
                return classified is not None
            return classified is error_type

        base = policy or self._default_policy
        return await self.execute(operation, base.with_overrides(is_retryable=matches))

    @staticmethod
    async def _notify(policy: RetryPolicy, attempt: int, delay: float, error: Exception) -> None:
        if policy.on_retry is None:
            return
        try:
            outcome = policy.on_retry(attempt, delay, error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("retry_callback_failed", extra={"attempt": attempt})


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    engine: RetryEngine | None = None,
) -> T:
    """Run ``operation`` with retries and return its value.

    Raises:
        Exception: the last error when the operation ultimately fails
    """
    result = await (engine or RetryEngine()).execute(operation, policy)
    if result.error is not None:
        raise result.error
    return result.value  # type: ignore[return-value]
