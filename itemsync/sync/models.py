"""Pydantic models for reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime  # noqa: TC003 - Pydantic needs this at runtime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from itemsync.core.events import Event
from itemsync.core.time_utils import ensure_utc, utc_now


class ConflictType(str, Enum):
    BOTH_MODIFIED = "both_modified"
    URL_MISMATCH = "url_mismatch"
    METADATA_ONLY = "metadata_only"
    # Reserved; never produced by detection.
    LOCAL_ONLY_REMOTE_DELETED = "local_only_remote_deleted"
    LOCAL_DELETED_REMOTE_MODIFIED = "local_deleted_remote_modified"


class ConflictStrategy(str, Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    NEWEST_WINS = "newest_wins"
    MERGE = "merge"
    MANUAL = "manual"


class ManualAction(str, Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    KEEP_BOTH = "keep_both"
    DELETE_BOTH = "delete_both"


class Item(BaseModel):
    """Canonical remote record; ``url`` is its cross-system identity."""

    url: str
    title: str
    provider_id: str = Field(alias="providerId")
    last_modified: datetime | None = Field(default=None, alias="lastModified")
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "ignore", "frozen": True}

    @field_validator("last_modified", mode="after")
    @classmethod
    def _last_modified_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class StoreItem(BaseModel):
    """An entry as listed by the local state store."""

    handle: str
    url: str | None = None
    title: str = ""

    model_config = {"frozen": True}


class LocalRecord(BaseModel):
    """Persisted link between a local store handle and the item it mirrors."""

    handle: str
    url: str
    title: str
    provider_id: str = Field(alias="providerId")
    last_synced_at: datetime = Field(default_factory=utc_now, alias="lastSyncedAt")
    last_modified: datetime | None = Field(default=None, alias="lastModified")
    metadata: dict[str, Any] = Field(default_factory=dict)
    # Remote last_modified the local title was deliberately kept against.
    kept_against: datetime | None = Field(default=None, alias="keptAgainst")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    def to_item(self) -> Item:
        return Item(
            url=self.url,
            title=self.title,
            provider_id=self.provider_id,
            last_modified=self.last_modified,
            metadata=self.metadata,
        )


class UpdateOperation(BaseModel):
    handle: str
    item: Item


class SyncDiff(BaseModel):
    """Disjoint partition of work for one pass; never persisted."""

    to_add: list[Item] = Field(default_factory=list)
    to_update: list[UpdateOperation] = Field(default_factory=list)
    to_delete: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    unchanged: int = 0
    # URL -> title kept in place of the remote title for a matched pair.
    kept_local: dict[str, str] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete)


class CreateOperation(BaseModel):
    title: str
    url: str


class TitleUpdate(BaseModel):
    handle: str
    title: str


class BatchOperations(BaseModel):
    """Payload for ``LocalStateStore.batch_apply``."""

    create: list[CreateOperation] = Field(default_factory=list)
    update: list[TitleUpdate] = Field(default_factory=list)
    delete: list[str] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.create) + len(self.update) + len(self.delete)


class ApplyResult(BaseModel):
    """Per-operation outcome of a batch; failures are collected, not raised."""

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: ApplyResult) -> ApplyResult:
        return ApplyResult(
            succeeded=self.succeeded + other.succeeded,
            failed=self.failed + other.failed,
            errors=[*self.errors, *other.errors],
        )


class Conflict(BaseModel):
    id: str
    type: ConflictType
    local: Item | None = None
    remote: Item | None = None
    provider_id: str = Field(alias="providerId")
    detected_at: datetime = Field(default_factory=utc_now, alias="detectedAt")

    model_config = {"populate_by_name": True}


class ConflictResolution(BaseModel):
    conflict: Conflict
    strategy: ConflictStrategy
    resolved: Item | None = None
    requires_user_confirmation: bool = False


class SyncResult(BaseModel):
    """Result of one provider's reconciliation pass."""

    provider_id: str
    success: bool = True
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    conflicts: int = 0
    apply_failed: int = 0
    error: str | None = None
    retryable: bool = False
    errors: list[str] = Field(default_factory=list)
    retryable_errors: list[str] = Field(default_factory=list)
    permanent_errors: list[str] = Field(default_factory=list)
    correlation_id: str | None = None
    duration_seconds: float = 0.0


class ConflictEventType(str, Enum):
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"


@dataclass(frozen=True)
class ConflictEvent(Event):
    """Conflict lifecycle event for a single provider."""


SyncDiff.model_rebuild()
