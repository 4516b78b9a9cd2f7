"""In-memory ``RecordRepository``."""

from __future__ import annotations

import asyncio
from datetime import datetime  # noqa: TC003

from itemsync.sync.models import LocalRecord


class InMemoryRecordRepository:
    """Keeps ``LocalRecord``s and last-sync times per provider in process memory."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, LocalRecord]] = {}
        self._last_sync: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def list_records(self, provider_id: str) -> list[LocalRecord]:
        async with self._lock:
            return [r.model_copy() for r in self._records.get(provider_id, {}).values()]

    async def upsert_record(self, record: LocalRecord) -> None:
        async with self._lock:
            self._records.setdefault(record.provider_id, {})[record.handle] = record.model_copy()

    async def delete_record(self, provider_id: str, handle: str) -> None:
        async with self._lock:
            self._records.get(provider_id, {}).pop(handle, None)

    async def replace_records(self, provider_id: str, records: list[LocalRecord]) -> None:
        async with self._lock:
            self._records[provider_id] = {r.handle: r.model_copy() for r in records}

    async def get_last_sync_time(self, provider_id: str) -> datetime | None:
        return self._last_sync.get(provider_id)

    async def set_last_sync_time(self, provider_id: str, when: datetime) -> None:
        self._last_sync[provider_id] = when

    async def clear(self, provider_id: str) -> None:
        async with self._lock:
            self._records.pop(provider_id, None)
            self._last_sync.pop(provider_id, None)
