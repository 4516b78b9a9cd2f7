"""Per-provider rate limiting for outbound API calls.

Three algorithms are supported per provider:

- token bucket: capacity ``max_requests``, refilled lazily at
  ``max_requests / window_seconds`` tokens per second
- sliding window: at most ``max_requests`` calls in any trailing window
- fixed window: a counter that resets at each window boundary

State is computed on check, so no background timer is needed for refills.
The optional sweep task only drops state for providers that went idle.
Counters live in process memory; multiple processes do not share them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_IDLE_TTL_SECONDS = 3600.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0
# Header reset values above this are epoch seconds, below it delta seconds.
EPOCH_THRESHOLD = 1_000_000_000
_MIN_WAIT_SECONDS = 0.01

_HEADER_PREFIXES = ("x-ratelimit-", "x-rate-limit-", "ratelimit-")


class RateLimitStrategy(str, Enum):
    TOKEN_BUCKET = "token_bucket"
    SLIDING_WINDOW = "sliding_window"
    FIXED_WINDOW = "fixed_window"


class RateLimitConfig(BaseModel):
    """Rate limit for a single provider."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    strategy: RateLimitStrategy = RateLimitStrategy.TOKEN_BUCKET
    max_requests: int = Field(default=60, gt=0, alias="maxRequests")
    window_seconds: float = Field(default=60.0, gt=0, alias="windowSeconds")


class RateLimitExceeded(Exception):
    """Raised when ``wait_for_slot`` gives up before a slot became free."""

    status_code = 429

    def __init__(self, provider_id: str, retry_after: float) -> None:
        super().__init__(
            f"Rate limit for {provider_id} still exhausted; retry in {retry_after:.2f}s"
        )
        self.provider_id = provider_id
        self.retry_after = retry_after


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    limit: int
    reset_in: float
    is_limited: bool


@dataclass
class RateLimitState:
    """Mutable counters for one provider; owned by ``ProviderRateLimiter``."""

    provider_id: str
    strategy: RateLimitStrategy
    limit: int
    window_seconds: float
    window_start: float
    tokens: float = 0.0
    last_refill: float = 0.0
    count: int = 0
    timestamps: deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0
    last_used: float = 0.0

    @property
    def refill_rate(self) -> float:
        return self.limit / self.window_seconds


@dataclass(frozen=True)
class RateLimitHeaders:
    limit: int | None = None
    remaining: int | None = None
    reset_in: float | None = None


def _parse_number(value: str | None) -> float | None:
    if value is None:
        return None
    # "RateLimit-Limit: 100, 100;w=60" style values carry policies after a comma.
    head = value.split(",", 1)[0].split(";", 1)[0].strip()
    try:
        number = float(head)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_rate_limit_headers(
    headers: Mapping[str, str], *, wall_now: float | None = None
) -> RateLimitHeaders:
    """Read limit/remaining/reset from standard rate-limit response headers.

    Header names are matched case-insensitively across the ``X-RateLimit-*``,
    ``X-Rate-Limit-*`` and ``RateLimit-*`` spellings. A ``Retry-After`` header
    (delta seconds) is used when no reset header is present.
    """
    lowered = {str(key).lower(): str(value) for key, value in headers.items()}

    def lookup(suffix: str) -> float | None:
        for prefix in _HEADER_PREFIXES:
            number = _parse_number(lowered.get(prefix + suffix))
            if number is not None:
                return number
        return None

    limit = lookup("limit")
    remaining = lookup("remaining")
    reset = lookup("reset")

    reset_in: float | None = None
    if reset is not None:
        if reset > EPOCH_THRESHOLD:
            now = time.time() if wall_now is None else wall_now
            reset_in = max(0.0, reset - now)
        else:
            reset_in = max(0.0, reset)
    else:
        retry_after = _parse_number(lowered.get("retry-after"))
        if retry_after is not None:
            reset_in = max(0.0, retry_after)

    return RateLimitHeaders(
        limit=int(limit) if limit is not None and limit > 0 else None,
        remaining=max(0, int(remaining)) if remaining is not None else None,
        reset_in=reset_in,
    )


class ProviderRateLimiter:
    """Per-provider request throttling with configurable algorithms.

    Check-and-consume is serialized per provider with an ``asyncio.Lock``;
    different providers never contend with each other.
    """

    def __init__(
        self,
        default_config: RateLimitConfig | None = None,
        *,
        idle_ttl: float = DEFAULT_IDLE_TTL_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the limiter.

        Args:
            default_config: Config for providers without an explicit one
            idle_ttl: Seconds of inactivity after which provider state is swept
            sweep_interval: Seconds between idle sweeps once ``start()`` is called
            clock: Monotonic time source
            wall_clock: Epoch time source, used for epoch-valued reset headers
            sleep: Coroutine used to wait for a slot
        """
        self._default_config = default_config or RateLimitConfig()
        self._idle_ttl = idle_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep

        self._configs: dict[str, RateLimitConfig] = {}
        self._states: dict[str, RateLimitState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sweep_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, provider_id: str, config: RateLimitConfig) -> None:
        """Set the provider's limit; existing counters are discarded."""
        self._configs[provider_id] = config
        self._states.pop(provider_id, None)
        logger.info(
            "rate_limit_configured",
            extra={
                "provider_id": provider_id,
                "strategy": config.strategy.value,
                "max_requests": config.max_requests,
                "window_seconds": config.window_seconds,
            },
        )

    def get_config(self, provider_id: str) -> RateLimitConfig:
        return self._configs.get(provider_id, self._default_config)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the idle-state sweep task. Requires a running event loop."""
        if self._sweep_task is not None:
            logger.warning("rate_limiter_sweep_already_running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="rate-limiter-sweep")
        logger.info("rate_limiter_sweep_started", extra={"interval_seconds": self._sweep_interval})

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweep_task
        self._sweep_task = None
        logger.info("rate_limiter_sweep_stopped")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await self._sleep(self._sweep_interval)
            try:
                self.cleanup_expired()
            except Exception:
                logger.exception("rate_limiter_sweep_failed")

    def cleanup_expired(self) -> int:
        """Drop state for providers idle longer than ``idle_ttl``.

        Returns:
            Number of provider states removed
        """
        now = self._clock()
        stale = [
            provider_id
            for provider_id, state in self._states.items()
            if now - state.last_used > self._idle_ttl and state.blocked_until <= now
        ]
        for provider_id in stale:
            del self._states[provider_id]
            lock = self._locks.get(provider_id)
            if lock is not None and not lock.locked():
                del self._locks[provider_id]
        if stale:
            logger.debug("rate_limiter_cleanup", extra={"providers_cleaned": len(stale)})
        return len(stale)

    # ------------------------------------------------------------------
    # Limiting
    # ------------------------------------------------------------------

    async def check_limit(self, provider_id: str) -> bool:
        """Atomically check for and consume one unit of quota."""
        async with self._lock_for(provider_id):
            return self._try_consume(provider_id)

    async def wait_for_slot(self, provider_id: str, *, timeout: float | None = None) -> None:
        """Suspend until one unit of quota is available, then consume it.

        Args:
            provider_id: Provider to consume quota from
            timeout: Give up after this many seconds (unbounded when ``None``)

        Raises:
            RateLimitExceeded: when ``timeout`` elapses first
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            async with self._lock_for(provider_id):
                if self._try_consume(provider_id):
                    return
                wait = self._time_until_available(self._state(provider_id), self._clock())

            if deadline is not None:
                left = deadline - self._clock()
                if left <= 0:
                    raise RateLimitExceeded(provider_id, wait)
                wait = min(wait, left)

            logger.debug(
                "rate_limit_waiting",
                extra={"provider_id": provider_id, "wait_seconds": round(wait, 3)},
            )
            await self._sleep(max(wait, _MIN_WAIT_SECONDS))

    async def execute(
        self,
        provider_id: str,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Wait for a slot, then run ``operation``; its result or error passes through."""
        await self.wait_for_slot(provider_id, timeout=timeout)
        return await operation()

    def get_status(self, provider_id: str) -> RateLimitStatus:
        state = self._state(provider_id)
        now = self._clock()
        self._advance(state, now)
        remaining = self._remaining(state, now)
        reset_in = self._time_until_reset(state, now)
        return RateLimitStatus(
            remaining=remaining,
            limit=state.limit,
            reset_in=reset_in,
            is_limited=remaining <= 0,
        )

    def get_all_statuses(self) -> dict[str, RateLimitStatus]:
        provider_ids = set(self._configs) | set(self._states)
        return {provider_id: self.get_status(provider_id) for provider_id in sorted(provider_ids)}

    def update_from_headers(self, provider_id: str, headers: Mapping[str, str]) -> None:
        """Reconcile local counters with the upstream's reported rate-limit state.

        Upstream values always override the local estimate.
        """
        parsed = parse_rate_limit_headers(headers, wall_now=self._wall_clock())
        if parsed.limit is None and parsed.remaining is None and parsed.reset_in is None:
            return

        state = self._state(provider_id)
        now = self._clock()
        self._advance(state, now)

        if parsed.limit is not None:
            state.limit = parsed.limit
        remaining = parsed.remaining
        if remaining is not None:
            remaining = min(remaining, state.limit)
            used = state.limit - remaining
            if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
                state.tokens = float(remaining)
                state.last_refill = now
            elif state.strategy is RateLimitStrategy.FIXED_WINDOW:
                state.count = used
            else:
                while len(state.timestamps) > used:
                    state.timestamps.popleft()
                while len(state.timestamps) < used:
                    state.timestamps.append(now)

        if parsed.reset_in is not None:
            reset_at = now + parsed.reset_in
            if state.strategy is RateLimitStrategy.FIXED_WINDOW:
                state.window_start = reset_at - state.window_seconds
            if remaining == 0:
                state.blocked_until = reset_at
        elif remaining is not None and remaining > 0:
            state.blocked_until = 0.0

        logger.debug(
            "rate_limit_headers_applied",
            extra={
                "provider_id": provider_id,
                "limit": parsed.limit,
                "remaining": parsed.remaining,
                "reset_in": parsed.reset_in,
            },
        )

    def reset(self, provider_id: str) -> None:
        self._states.pop(provider_id, None)
        logger.info("rate_limit_reset", extra={"provider_id": provider_id})

    def reset_all(self) -> None:
        self._states.clear()
        logger.info("rate_limit_reset_all")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    def _state(self, provider_id: str) -> RateLimitState:
        state = self._states.get(provider_id)
        if state is None:
            config = self.get_config(provider_id)
            now = self._clock()
            state = RateLimitState(
                provider_id=provider_id,
                strategy=config.strategy,
                limit=config.max_requests,
                window_seconds=config.window_seconds,
                window_start=now,
                tokens=float(config.max_requests),
                last_refill=now,
                last_used=now,
            )
            self._states[provider_id] = state
        return state

    def _advance(self, state: RateLimitState, now: float) -> None:
        if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(float(state.limit), state.tokens + elapsed * state.refill_rate)
            state.last_refill = now
        elif state.strategy is RateLimitStrategy.SLIDING_WINDOW:
            cutoff = now - state.window_seconds
            while state.timestamps and state.timestamps[0] <= cutoff:
                state.timestamps.popleft()
        elif now - state.window_start >= state.window_seconds:
            windows = math.floor((now - state.window_start) / state.window_seconds)
            state.window_start += windows * state.window_seconds
            state.count = 0

    def _remaining(self, state: RateLimitState, now: float) -> int:
        if state.blocked_until > now:
            return 0
        if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
            return max(0, int(state.tokens))
        if state.strategy is RateLimitStrategy.SLIDING_WINDOW:
            return max(0, state.limit - len(state.timestamps))
        return max(0, state.limit - state.count)

    def _try_consume(self, provider_id: str) -> bool:
        state = self._state(provider_id)
        now = self._clock()
        state.last_used = now
        self._advance(state, now)

        if self._remaining(state, now) <= 0:
            logger.debug(
                "rate_limit_exceeded",
                extra={
                    "provider_id": provider_id,
                    "strategy": state.strategy.value,
                    "limit": state.limit,
                },
            )
            return False

        if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
            state.tokens -= 1
        elif state.strategy is RateLimitStrategy.SLIDING_WINDOW:
            state.timestamps.append(now)
        else:
            state.count += 1
        return True

    def _time_until_available(self, state: RateLimitState, now: float) -> float:
        if state.blocked_until > now:
            return state.blocked_until - now
        if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
            return max(0.0, (1 - state.tokens) / state.refill_rate)
        if state.strategy is RateLimitStrategy.SLIDING_WINDOW:
            if len(state.timestamps) < state.limit:
                return 0.0
            # The slot frees once enough of the oldest calls leave the window.
            index = len(state.timestamps) - state.limit
            return max(0.0, state.timestamps[index] + state.window_seconds - now)
        return max(0.0, state.window_start + state.window_seconds - now)

    def _time_until_reset(self, state: RateLimitState, now: float) -> float:
        if state.blocked_until > now:
            return state.blocked_until - now
        if state.strategy is RateLimitStrategy.TOKEN_BUCKET:
            return max(0.0, (state.limit - state.tokens) / state.refill_rate)
        if state.strategy is RateLimitStrategy.SLIDING_WINDOW:
            if not state.timestamps:
                return 0.0
            return max(0.0, state.timestamps[-1] + state.window_seconds - now)
        return max(0.0, state.window_start + state.window_seconds - now)
