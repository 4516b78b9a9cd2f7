"""Reconciliation: diffing, conflict handling and the sync engine."""

from itemsync.sync.conflicts import ConflictResolver, classify_conflict
from itemsync.sync.diff import compute_diff
from itemsync.sync.engine import ProviderBinding, ReconciliationEngine, UnknownProviderError
from itemsync.sync.models import (
    ApplyResult,
    BatchOperations,
    Conflict,
    ConflictEvent,
    ConflictResolution,
    ConflictStrategy,
    ConflictType,
    Item,
    LocalRecord,
    ManualAction,
    StoreItem,
    SyncDiff,
    SyncResult,
)
from itemsync.sync.records import InMemoryRecordRepository

__all__ = [
    "ApplyResult",
    "BatchOperations",
    "Conflict",
    "ConflictEvent",
    "ConflictResolution",
    "ConflictResolver",
    "ConflictStrategy",
    "ConflictType",
    "InMemoryRecordRepository",
    "Item",
    "LocalRecord",
    "ManualAction",
    "ProviderBinding",
    "ReconciliationEngine",
    "StoreItem",
    "SyncDiff",
    "SyncResult",
    "UnknownProviderError",
    "classify_conflict",
    "compute_diff",
]
