"""Reconciliation engine.

One pass per provider:

1. read the local snapshot (store items joined with persisted ``LocalRecord``s)
2. fetch remote items through ``rate_limiter.execute(retry.execute(fetch))``
   with a token from the token provider
3. diff by URL and resolve conflicts for matched pairs
4. apply deletes, then updates, then creates to the local store
5. rebuild ``LocalRecord``s from a fresh snapshot and record the sync time

Passes for the same provider are serialized by a per-provider lock; passes
for different providers run independently. Failures are reported in the
returned ``SyncResult`` and never escape ``sync_provider`` / ``sync_all``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from itemsync.core.logging_utils import generate_correlation_id
from itemsync.core.time_utils import utc_now
from itemsync.sync.diff import compute_diff, index_remote
from itemsync.sync.errors import format_error, record_error
from itemsync.sync.models import (
    ApplyResult,
    BatchOperations,
    Conflict,
    CreateOperation,
    Item,
    LocalRecord,
    ManualAction,
    SyncDiff,
    SyncResult,
    TitleUpdate,
)
from itemsync.sync.records import InMemoryRecordRepository
from itemsync.utils.retry_utils import (
    RetryableErrorType,
    RetryEngine,
    RetryPolicy,
    classify_error,
    is_transient_error,
)

if TYPE_CHECKING:
    from itemsync.sync.conflicts import ConflictResolver
    from itemsync.sync.protocols import (
        LocalStateStore,
        RecordRepository,
        RemoteItemSource,
        RequestThrottle,
        TokenProvider,
    )

logger = logging.getLogger(__name__)


class UnknownProviderError(KeyError):
    """Raised when an operation names a provider that was never registered."""


@dataclass
class ProviderBinding:
    provider_id: str
    source: RemoteItemSource
    namespace: str
    retry_policy: RetryPolicy | None = None
    enabled: bool = True


class ReconciliationEngine:
    """Keeps each provider's local namespace in step with its remote items."""

    def __init__(
        self,
        store: LocalStateStore,
        *,
        resolver: ConflictResolver,
        rate_limiter: RequestThrottle,
        retry: RetryEngine | None = None,
        tokens: TokenProvider | None = None,
        records: RecordRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Local state store being mirrored into
            resolver: Conflict resolver for matched pairs
            rate_limiter: Per-provider request throttle
            retry: Retry engine wrapped around every fetch
            tokens: Token source; providers fetch with ``None`` when omitted
            records: Persistence for ``LocalRecord``s and last-sync times
            clock: Wall-clock source for timestamps
            timer: Monotonic source for pass durations
        """
        self._store = store
        self._resolver = resolver
        self._rate_limiter = rate_limiter
        self._retry = retry or RetryEngine()
        self._tokens = tokens
        self._records: RecordRepository = records or InMemoryRecordRepository()
        self._clock = clock
        self._timer = timer
        self._bindings: dict[str, ProviderBinding] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Provider registry
    # ------------------------------------------------------------------

    def register_provider(
        self,
        provider_id: str,
        source: RemoteItemSource,
        *,
        namespace: str | None = None,
        retry_policy: RetryPolicy | None = None,
        enabled: bool = True,
    ) -> ProviderBinding:
        binding = ProviderBinding(
            provider_id=provider_id,
            source=source,
            namespace=namespace or provider_id,
            retry_policy=retry_policy,
            enabled=enabled,
        )
        self._bindings[provider_id] = binding
        logger.info(
            "provider_registered",
            extra={"provider_id": provider_id, "namespace": binding.namespace, "enabled": enabled},
        )
        return binding

    def unregister_provider(self, provider_id: str) -> bool:
        removed = self._bindings.pop(provider_id, None) is not None
        if removed:
            logger.info("provider_unregistered", extra={"provider_id": provider_id})
        return removed

    def get_provider(self, provider_id: str) -> ProviderBinding | None:
        return self._bindings.get(provider_id)

    @property
    def provider_ids(self) -> list[str]:
        return list(self._bindings)

    def is_syncing(self, provider_id: str) -> bool:
        lock = self._locks.get(provider_id)
        return lock is not None and lock.locked()

    async def get_last_sync_time(self, provider_id: str) -> datetime | None:
        return await self._records.get_last_sync_time(provider_id)

    def _binding(self, provider_id: str) -> ProviderBinding:
        binding = self._bindings.get(provider_id)
        if binding is None:
            msg = f"Unknown provider: {provider_id}"
            raise UnknownProviderError(msg)
        return binding

    def _lock_for(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync_all(self) -> list[SyncResult]:
        """Run a pass for every enabled provider concurrently.

        One provider's failure never affects the others.
        """
        provider_ids = [pid for pid, binding in self._bindings.items() if binding.enabled]
        if not provider_ids:
            logger.info("sync_all_no_providers")
            return []

        started = self._timer()
        results = await asyncio.gather(*(self.sync_provider(pid) for pid in provider_ids))
        logger.info(
            "sync_all_completed",
            extra={
                "providers": len(results),
                "failed": sum(1 for r in results if not r.success),
                "added": sum(r.added for r in results),
                "updated": sum(r.updated for r in results),
                "deleted": sum(r.deleted for r in results),
                "duration_seconds": round(self._timer() - started, 3),
            },
        )
        return list(results)

    async def sync_provider(self, provider_id: str) -> SyncResult:
        """Run one reconciliation pass; failures are returned, not raised."""
        correlation_id = generate_correlation_id()
        result = SyncResult(provider_id=provider_id, correlation_id=correlation_id)
        started = self._timer()

        binding = self._bindings.get(provider_id)
        if binding is None:
            result.success = False
            result.error = f"Unknown provider: {provider_id}"
            record_error(result, result.error, retryable=False)
            return result

        lock = self._lock_for(provider_id)
        if lock.locked():
            logger.info(
                "sync_waiting_for_previous_pass",
                extra={"provider_id": provider_id, "correlation_id": correlation_id},
            )

        async with lock:
            logger.info(
                "sync_started",
                extra={"provider_id": provider_id, "correlation_id": correlation_id},
            )
            try:
                await self._run_pass(binding, result)
            except Exception as exc:
                retryable = is_transient_error(exc)
                result.success = False
                result.retryable = retryable
                result.error = format_error(exc)
                record_error(result, result.error, retryable)
                logger.warning(
                    "sync_failed",
                    extra={
                        "provider_id": provider_id,
                        "correlation_id": correlation_id,
                        "error": result.error,
                        "retryable": retryable,
                    },
                )
            finally:
                result.duration_seconds = round(self._timer() - started, 3)

        if result.success:
            logger.info(
                "sync_completed",
                extra={
                    "provider_id": provider_id,
                    "correlation_id": correlation_id,
                    "added": result.added,
                    "updated": result.updated,
                    "deleted": result.deleted,
                    "unchanged": result.unchanged,
                    "conflicts": result.conflicts,
                    "apply_failed": result.apply_failed,
                    "duration_seconds": result.duration_seconds,
                },
            )
        return result

    async def _run_pass(self, binding: ProviderBinding, result: SyncResult) -> None:
        local = await self._load_local(binding)
        remote = await self._fetch_remote(binding, result.correlation_id)
        diff = compute_diff(local, remote, resolve=self._resolve_live)
        result.unchanged = diff.unchanged
        result.conflicts = len(diff.conflicts)

        delete_result, update_result, create_result = await self._apply(binding, diff)
        result.deleted = delete_result.succeeded
        result.updated = update_result.succeeded
        result.added = create_result.succeeded
        applied = delete_result.merge(update_result).merge(create_result)
        result.apply_failed = applied.failed
        for message in applied.errors:
            record_error(result, message, retryable=False)
        if applied.failed:
            logger.warning(
                "sync_apply_partial_failure",
                extra={
                    "provider_id": binding.provider_id,
                    "correlation_id": result.correlation_id,
                    "failed": applied.failed,
                },
            )

        remote_by_url = index_remote(remote)
        effective = dict(remote_by_url)
        effective.update({op.item.url: op.item for op in diff.to_update})
        await self._rebuild_records(binding, effective, remote_by_url, diff.kept_local)
        await self._records.set_last_sync_time(binding.provider_id, self._clock())

    async def calculate_diff(self, provider_id: str) -> SyncDiff:
        """Compute the diff a pass would apply, without applying it.

        Conflicts are classified and resolved by strategy but not queued
        and no events are emitted.

        Raises:
            UnknownProviderError: provider was never registered
            Exception: the fetch error once retries are exhausted
        """
        binding = self._binding(provider_id)
        local = await self._load_local(binding)
        remote = await self._fetch_remote(binding, generate_correlation_id())
        return compute_diff(local, remote, resolve=self._resolver.preview)

    def _resolve_live(self, local: Item, remote: Item) -> tuple[Item, Conflict | None]:
        conflict = self._resolver.detect_conflict(local, remote)
        if conflict is None:
            return remote, None
        resolution = self._resolver.resolve(conflict)
        return resolution.resolved or remote, conflict

    # ------------------------------------------------------------------
    # Local snapshot
    # ------------------------------------------------------------------

    async def _load_local(self, binding: ProviderBinding) -> list[LocalRecord]:
        store_items = await self._store.list_items(binding.namespace)
        known = {r.handle: r for r in await self._records.list_records(binding.provider_id)}
        local: list[LocalRecord] = []
        for entry in store_items:
            if not entry.url:
                continue
            record = known.get(entry.handle)
            if record is not None and record.url == entry.url:
                local.append(record.model_copy(update={"title": entry.title}))
            else:
                local.append(
                    LocalRecord(
                        handle=entry.handle,
                        url=entry.url,
                        title=entry.title,
                        provider_id=binding.provider_id,
                    )
                )
        return local

    async def _rebuild_records(
        self,
        binding: ProviderBinding,
        effective: dict[str, Item],
        remote_by_url: dict[str, Item],
        kept_local: dict[str, str],
    ) -> None:
        now = self._clock()
        known = {r.handle: r for r in await self._records.list_records(binding.provider_id)}
        records: list[LocalRecord] = []
        for entry in await self._store.list_items(binding.namespace):
            if not entry.url:
                continue
            item = effective.get(entry.url)
            if item is not None:
                kept_against = None
                if kept_local.get(entry.url) == entry.title:
                    kept_against = remote_by_url[entry.url].last_modified
                records.append(
                    LocalRecord(
                        handle=entry.handle,
                        url=entry.url,
                        title=entry.title,
                        provider_id=binding.provider_id,
                        last_synced_at=now,
                        last_modified=item.last_modified,
                        metadata=item.metadata,
                        kept_against=kept_against,
                    )
                )
            elif entry.handle in known:
                # Delete failed; keep tracking it so the next pass retries.
                records.append(known[entry.handle])
        await self._records.replace_records(binding.provider_id, records)

    # ------------------------------------------------------------------
    # Remote fetch
    # ------------------------------------------------------------------

    async def _fetch_remote(self, binding: ProviderBinding, correlation_id: str | None) -> list[Item]:
        provider_id = binding.provider_id
        force_refresh = False

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            nonlocal force_refresh
            if classify_error(error) is RetryableErrorType.AUTH_EXPIRED:
                force_refresh = True

        base_policy = binding.retry_policy or self._retry.default_policy
        policy = base_policy.with_overrides(on_retry=_chain(base_policy.on_retry, on_retry))

        async def fetch_once() -> list[Item]:
            nonlocal force_refresh
            token = None
            if self._tokens is not None:
                token = await self._tokens.get_token(provider_id, force_refresh=force_refresh)
                force_refresh = False
            return await binding.source.fetch_items(token)

        async def fetch_with_retry() -> list[Item]:
            outcome = await self._retry.execute(fetch_once, policy)
            if not outcome.success:
                raise outcome.error  # type: ignore[misc]
            return outcome.value or []

        items = await self._rate_limiter.execute(provider_id, fetch_with_retry)
        logger.debug(
            "remote_items_fetched",
            extra={"provider_id": provider_id, "correlation_id": correlation_id, "count": len(items)},
        )
        return [
            item
            if item.provider_id == provider_id
            else item.model_copy(update={"provider_id": provider_id})
            for item in items
        ]

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    async def _apply(
        self, binding: ProviderBinding, diff: SyncDiff
    ) -> tuple[ApplyResult, ApplyResult, ApplyResult]:
        deletes = BatchOperations(delete=list(diff.to_delete))
        updates = BatchOperations(
            update=[TitleUpdate(handle=op.handle, title=op.item.title) for op in diff.to_update]
        )
        creates = BatchOperations(
            create=[CreateOperation(title=item.title, url=item.url) for item in diff.to_add]
        )
        delete_result = await self._apply_phase(binding, "delete", deletes)
        update_result = await self._apply_phase(binding, "update", updates)
        create_result = await self._apply_phase(binding, "create", creates)
        return delete_result, update_result, create_result

    async def _apply_phase(
        self, binding: ProviderBinding, phase: str, operations: BatchOperations
    ) -> ApplyResult:
        if not operations.size:
            return ApplyResult()
        try:
            return await self._store.batch_apply(binding.namespace, operations)
        except Exception as exc:
            message = f"{phase} batch failed: {format_error(exc)}"
            logger.warning(
                "sync_apply_phase_failed",
                extra={"provider_id": binding.provider_id, "phase": phase, "error": str(exc)},
            )
            return ApplyResult(failed=operations.size, errors=[message])

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    async def apply_manual_resolution(
        self, conflict_id: str, action: ManualAction
    ) -> ApplyResult | None:
        """Resolve a queued conflict and apply the decision to the local store.

        Returns ``None`` when no such conflict is pending.
        """
        conflict = self._resolver.get_conflict(conflict_id)
        if conflict is None:
            logger.warning("manual_resolution_conflict_not_found", extra={"conflict_id": conflict_id})
            return None
        binding = self._binding(conflict.provider_id)

        async with self._lock_for(binding.provider_id):
            resolution = self._resolver.resolve_manually(conflict_id, action)
            if resolution is None:
                return None
            url = (conflict.remote or conflict.local).url  # type: ignore[union-attr]
            handles = [
                entry.handle
                for entry in await self._store.list_items(binding.namespace)
                if entry.url == url
            ]
            resolved = resolution.resolved
            if resolved is None:
                operations = BatchOperations(delete=handles)
            elif handles:
                operations = BatchOperations(
                    update=[TitleUpdate(handle=h, title=resolved.title) for h in handles[:1]]
                )
            else:
                operations = BatchOperations(
                    create=[CreateOperation(title=resolved.title, url=resolved.url)]
                )
            outcome = await self._apply_phase(binding, f"manual_{action.value}", operations)
            stamps = [
                item.last_modified
                for item in (conflict.local, conflict.remote)
                if item is not None and item.last_modified is not None
            ]
            kept_against = None
            if resolved is not None and conflict.remote is not None:
                if resolved.title != conflict.remote.title:
                    kept_against = conflict.remote.last_modified
            await self._refresh_records_for(
                binding, url, resolved, max(stamps, default=None), kept_against
            )

        logger.info(
            "manual_resolution_applied",
            extra={
                "provider_id": binding.provider_id,
                "conflict_id": conflict_id,
                "action": action.value,
                "succeeded": outcome.succeeded,
                "failed": outcome.failed,
            },
        )
        return outcome

    async def _refresh_records_for(
        self,
        binding: ProviderBinding,
        url: str,
        resolved: Item | None,
        last_modified: datetime | None,
        kept_against: datetime | None,
    ) -> None:
        """Re-link records for ``url`` after a manual decision.

        Records carry the newest timestamp seen on either side. A kept local
        title is pinned to the remote version it was chosen over, so later
        passes leave it alone until the remote item changes.
        """
        provider_id = binding.provider_id
        for record in await self._records.list_records(provider_id):
            if record.url == url:
                await self._records.delete_record(provider_id, record.handle)
        if resolved is None:
            return
        for entry in await self._store.list_items(binding.namespace):
            if entry.url == url:
                await self._records.upsert_record(
                    LocalRecord(
                        handle=entry.handle,
                        url=url,
                        title=entry.title,
                        provider_id=provider_id,
                        last_synced_at=self._clock(),
                        last_modified=last_modified,
                        metadata=resolved.metadata,
                        kept_against=kept_against,
                    )
                )
                break


def _chain(*callbacks: Any) -> Callable[[int, float, Exception], Any]:
    active = [cb for cb in callbacks if cb is not None]

    async def call_all(attempt: int, delay: float, error: Exception) -> None:
        for callback in active:
            outcome = callback(attempt, delay, error)
            if asyncio.iscoroutine(outcome):
                await outcome

    return call_all
