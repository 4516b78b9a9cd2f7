"""Ports consumed by the token lifecycle manager."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from itemsync.auth.models import AuthState, AuthTokens


class AuthorizationFlow(Protocol):
    """Host-side interactive consent (browser window, device prompt, ...).

    Implementations return the final redirect URL and raise
    ``AuthorizationCancelled`` when the user aborts.
    """

    async def launch_authorization(self, url: str) -> str: ...


class AuthStateStore(Protocol):
    async def get(self, provider_id: str) -> AuthState | None: ...

    async def save(self, state: AuthState) -> None: ...

    async def delete(self, provider_id: str) -> None: ...

    async def list_provider_ids(self) -> list[str]: ...


# Receives the current tokens, returns replacements.
RefreshCallback = Callable[[str, "AuthTokens"], Awaitable["AuthTokens"]]
