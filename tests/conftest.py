"""Pytest configuration and shared fakes.

The fakes here stand in for the host integrations (local store, remote
source, token source) and for time, so no test waits on a real clock.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import pytest

from itemsync.auth.models import OAuthConfig
from itemsync.config import AppConfig, ProviderConfig, RetrySettings, RuntimeConfig, SyncConfig
from itemsync.sync.models import ApplyResult, BatchOperations, Item, StoreItem

T0 = datetime(2025, 6, 15, 12, 0, 0, tzinfo=UTC)

_CONFIG_ENV_VARS = (
    "LOG_LEVEL",
    "LOG_USE_LOGURU",
    "LOG_FILE",
    "LOG_INCLUDE_LOCATION",
    "HTTP_TIMEOUT_SEC",
    "REQUEST_TIMEOUT_SEC",
    "DEFAULT_CONFLICT_STRATEGY",
    "AUTO_SYNC_ENABLED",
    "SYNC_INTERVAL_MINUTES",
    "RATE_LIMITER_SWEEP_SECONDS",
    "RATE_LIMITER_IDLE_TTL_SECONDS",
    "TOKEN_REFRESH_MARGIN_SECONDS",
    "RETRY_MAX_RETRIES",
    "RETRY_INITIAL_DELAY",
    "RETRY_MAX_DELAY",
    "RETRY_BACKOFF_MULTIPLIER",
    "RETRY_STRATEGY",
    "RETRY_JITTER",
    "ITEMSYNC_PROVIDERS",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every configuration variable so tests start from defaults."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


# ---------------------------------------------------------------------------
# Clocks
# ---------------------------------------------------------------------------


class FakeMonotonic:
    """Float clock advanced by hand or by ``sleep``."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeWallClock:
    """Datetime clock for services that timestamp with ``utc_now``."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SleepRecorder:
    """Async ``sleep`` replacement that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def url_for(n: int) -> str:
    return f"https://example.com/items/{n}"


def make_item(
    url: str,
    title: str,
    *,
    provider_id: str = "p1",
    last_modified: datetime | None = None,
    metadata: dict[str, Any] | None = None,
) -> Item:
    return Item(
        url=url,
        title=title,
        provider_id=provider_id,
        last_modified=last_modified,
        metadata=metadata or {},
    )


class HttpError(Exception):
    """Source failure carrying an HTTP status, as host sources raise them."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Host integrations
# ---------------------------------------------------------------------------


class InMemoryLocalStore:
    """Local state store keyed by namespace, with switchable failures."""

    def __init__(self) -> None:
        self.namespaces: dict[str, dict[str, StoreItem]] = {}
        self.batches: list[tuple[str, BatchOperations]] = []
        self.fail_create_urls: set[str] = set()
        self.fail_phase: str | None = None
        self._next_handle = 0

    def seed(self, namespace: str, url: str, title: str) -> str:
        handle = self._new_handle()
        self.namespaces.setdefault(namespace, {})[handle] = StoreItem(
            handle=handle, url=url, title=title
        )
        return handle

    def titles(self, namespace: str) -> dict[str, str]:
        return {
            entry.url: entry.title
            for entry in self.namespaces.get(namespace, {}).values()
            if entry.url
        }

    def _new_handle(self) -> str:
        self._next_handle += 1
        return f"h{self._next_handle}"

    async def list_items(self, namespace: str) -> list[StoreItem]:
        return list(self.namespaces.get(namespace, {}).values())

    async def batch_apply(self, namespace: str, operations: BatchOperations) -> ApplyResult:
        self.batches.append((namespace, operations))
        if operations.create:
            phase = "create"
        elif operations.update:
            phase = "update"
        else:
            phase = "delete"
        if self.fail_phase == phase:
            msg = f"store unavailable during {phase}"
            raise RuntimeError(msg)

        bucket = self.namespaces.setdefault(namespace, {})
        result = ApplyResult()
        for handle in operations.delete:
            if bucket.pop(handle, None) is None:
                result.failed += 1
                result.errors.append(f"delete {handle}: not found")
            else:
                result.succeeded += 1
        for update in operations.update:
            entry = bucket.get(update.handle)
            if entry is None:
                result.failed += 1
                result.errors.append(f"update {update.handle}: not found")
                continue
            bucket[update.handle] = entry.model_copy(update={"title": update.title})
            result.succeeded += 1
        for create in operations.create:
            if create.url in self.fail_create_urls:
                result.failed += 1
                result.errors.append(f"create {create.url}: rejected")
                continue
            handle = self._new_handle()
            bucket[handle] = StoreItem(handle=handle, url=create.url, title=create.title)
            result.succeeded += 1
        return result


class ScriptedSource:
    """Remote source returning ``items``; queued errors are raised first."""

    def __init__(self, items: list[Item] | None = None, errors: list[Exception] | None = None):
        self.items = list(items or [])
        self.errors = list(errors or [])
        self.tokens: list[str | None] = []
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self.delay = 0.0

    async def fetch_items(self, token: str | None) -> list[Item]:
        self.calls += 1
        self.tokens.append(token)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            return list(self.items)
        finally:
            self.active -= 1


class FailingSource:
    """Remote source that always raises ``error``."""

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def fetch_items(self, token: str | None) -> list[Item]:
        self.calls += 1
        raise self.error


class RecordingTokens:
    """Token provider that hands out a new token whenever a refresh is forced."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, bool]] = []
        self._version = 1

    async def get_token(self, provider_id: str, *, force_refresh: bool = False) -> str | None:
        self.calls.append((provider_id, force_refresh))
        if force_refresh:
            self._version += 1
        return f"token-{self._version}"


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def make_oauth_config(**overrides: Any) -> OAuthConfig:
    values: dict[str, Any] = {
        "auth_url": "https://auth.example.com/authorize",
        "token_url": "https://auth.example.com/token",
        "client_id": "client-123",
        "client_secret": "secret-456",
        "redirect_uri": "https://app.example.com/callback",
        "scopes": ["read", "write"],
    }
    values.update(overrides)
    return OAuthConfig(**values)


class EchoAuthorizationFlow:
    """Authorization flow that answers with the state it was given."""

    def __init__(
        self,
        *,
        code: str | None = "auth-code",
        error: str | None = None,
        state: str | None = None,
        raises: Exception | None = None,
    ) -> None:
        self.code = code
        self.error = error
        self.state = state
        self.raises = raises
        self.urls: list[str] = []

    async def launch_authorization(self, url: str) -> str:
        self.urls.append(url)
        if self.raises is not None:
            raise self.raises
        params = parse_qs(urlparse(url).query)
        query = {"state": self.state or params["state"][0]}
        if self.error:
            query["error"] = self.error
        elif self.code:
            query["code"] = self.code
        return f"https://app.example.com/callback?{urlencode(query)}"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def make_test_app_config(
    providers: dict[str, ProviderConfig] | None = None, **sync_overrides: Any
) -> AppConfig:
    sync_values: dict[str, Any] = {"auto_sync_enabled": False}
    sync_values.update(sync_overrides)
    return AppConfig(
        runtime=RuntimeConfig(),
        sync=SyncConfig(**sync_values),
        retry=RetrySettings(jitter=False, initial_delay=0.01),
        providers=providers or {},
    )
