"""Protocol definitions (ports) for reconciliation.

The engine depends only on these; concrete stores, item sources and the
token/rate-limit/retry services are injected at construction time.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol, TypeVar

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

    from itemsync.sync.models import ApplyResult, BatchOperations, Item, LocalRecord, StoreItem

T = TypeVar("T")


class LocalStateStore(Protocol):
    """Host store mirrored by the engine. It has no transactions."""

    async def list_items(self, namespace: str) -> list[StoreItem]: ...

    async def batch_apply(self, namespace: str, operations: BatchOperations) -> ApplyResult: ...


class RemoteItemSource(Protocol):
    """Fetches a provider's canonical items.

    Errors should expose ``status_code`` (or an ``httpx`` response) so the
    default retry classifier can recognise them.
    """

    async def fetch_items(self, token: str | None) -> list[Item]: ...


class RecordRepository(Protocol):
    async def list_records(self, provider_id: str) -> list[LocalRecord]: ...

    async def upsert_record(self, record: LocalRecord) -> None: ...

    async def delete_record(self, provider_id: str, handle: str) -> None: ...

    async def replace_records(self, provider_id: str, records: list[LocalRecord]) -> None: ...

    async def get_last_sync_time(self, provider_id: str) -> datetime | None: ...

    async def set_last_sync_time(self, provider_id: str, when: datetime) -> None: ...


class TokenProvider(Protocol):
    async def get_token(self, provider_id: str, *, force_refresh: bool = False) -> str | None: ...


class RequestThrottle(Protocol):
    async def execute(self, provider_id: str, operation: Callable[[], Awaitable[T]]) -> T: ...

    def update_from_headers(self, provider_id: str, headers: Mapping[str, str]) -> None: ...

