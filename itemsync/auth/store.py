"""In-process auth state store."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from itemsync.auth.models import AuthState


class InMemoryAuthStateStore:
    """Keeps ``AuthState`` per provider in a dict; copies on read and write."""

    def __init__(self) -> None:
        self._states: dict[str, AuthState] = {}
        self._lock = asyncio.Lock()

    async def get(self, provider_id: str) -> AuthState | None:
        async with self._lock:
            state = self._states.get(provider_id)
            return state.model_copy(deep=True) if state else None

    async def save(self, state: AuthState) -> None:
        async with self._lock:
            self._states[state.provider_id] = state.model_copy(deep=True)

    async def delete(self, provider_id: str) -> None:
        async with self._lock:
            self._states.pop(provider_id, None)

    async def list_provider_ids(self) -> list[str]:
        async with self._lock:
            return list(self._states)
