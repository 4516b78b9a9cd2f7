"""Conflict detection and resolution for matched local/remote item pairs.

Detection is pure: the same pair always yields the same classification.
Resolution follows a strategy chosen per provider (falling back to the
default). Only the ``manual`` strategy keeps state: the conflict waits in
an in-memory queue, keyed ``{provider_id}-{url}``, until ``resolve_manually``.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime
from typing import Any

from itemsync.core.events import EventListener, EventSink
from itemsync.core.time_utils import utc_now
from itemsync.sync.constants import CONFLICT_ID_TEMPLATE, CONFLICT_THRESHOLD_SECONDS
from itemsync.sync.models import (
    Conflict,
    ConflictEvent,
    ConflictEventType,
    ConflictResolution,
    ConflictStrategy,
    ConflictType,
    Item,
    ManualAction,
)

logger = logging.getLogger(__name__)


def conflict_id(provider_id: str, url: str) -> str:
    return CONFLICT_ID_TEMPLATE.format(provider_id=provider_id, url=url)


def classify_conflict(
    local: Item,
    remote: Item,
    *,
    threshold_seconds: float = CONFLICT_THRESHOLD_SECONDS,
) -> ConflictType | None:
    """Classify a matched pair.

    - different URLs: ``url_mismatch``
    - both timestamps set and more than ``threshold_seconds`` apart:
      ``both_modified`` when the visible content (title or owning provider)
      differs, otherwise ``metadata_only``
    - anything else: no conflict
    """
    if local.url != remote.url:
        return ConflictType.URL_MISMATCH
    if local.last_modified is None or remote.last_modified is None:
        return None
    delta = abs((local.last_modified - remote.last_modified).total_seconds())
    if delta <= threshold_seconds:
        return None
    if local.title != remote.title or local.provider_id != remote.provider_id:
        return ConflictType.BOTH_MODIFIED
    return ConflictType.METADATA_ONLY


def _newest(local: Item, remote: Item) -> Item:
    if local.last_modified and remote.last_modified and local.last_modified > remote.last_modified:
        return local
    return remote


def _merge(local: Item, remote: Item) -> Item:
    local_ts, remote_ts = local.last_modified, remote.last_modified
    updates: dict[str, Any] = {}
    if local_ts and remote_ts and local_ts > remote_ts:
        updates["title"] = local.title
        updates["metadata"] = dict(local.metadata)
    stamps = [ts for ts in (local_ts, remote_ts) if ts is not None]
    if stamps:
        updates["last_modified"] = max(stamps)
    return remote.model_copy(update=updates)


def choose_item(local: Item, remote: Item, strategy: ConflictStrategy) -> Item:
    """Pick the winning item for a strategy; ``manual`` yields remote as the interim value."""
    if strategy is ConflictStrategy.LOCAL_WINS:
        return local
    if strategy is ConflictStrategy.NEWEST_WINS:
        return _newest(local, remote)
    if strategy is ConflictStrategy.MERGE:
        return _merge(local, remote)
    return remote


class ConflictResolver:
    """Detects and resolves conflicts; queues manual ones."""

    def __init__(
        self,
        default_strategy: ConflictStrategy = ConflictStrategy.REMOTE_WINS,
        *,
        events: EventSink[ConflictEvent] | None = None,
        threshold_seconds: float = CONFLICT_THRESHOLD_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._default_strategy = default_strategy
        self._provider_strategies: dict[str, ConflictStrategy] = {}
        self._events: EventSink[ConflictEvent] = events or EventSink("conflicts")
        self._threshold_seconds = threshold_seconds
        self._clock = clock
        self._pending: dict[str, Conflict] = {}
        self._detected_total = 0
        self._resolved_total = 0

    # ------------------------------------------------------------------
    # Strategy selection
    # ------------------------------------------------------------------

    @property
    def default_strategy(self) -> ConflictStrategy:
        return self._default_strategy

    def set_default_strategy(self, strategy: ConflictStrategy) -> None:
        self._default_strategy = strategy
        logger.info("conflict_default_strategy_set", extra={"strategy": strategy.value})

    def set_provider_strategy(self, provider_id: str, strategy: ConflictStrategy | None) -> None:
        """Override the strategy for one provider; ``None`` removes the override."""
        if strategy is None:
            self._provider_strategies.pop(provider_id, None)
        else:
            self._provider_strategies[provider_id] = strategy
        logger.info(
            "conflict_provider_strategy_set",
            extra={"provider_id": provider_id, "strategy": getattr(strategy, "value", None)},
        )

    def get_strategy(self, provider_id: str) -> ConflictStrategy:
        return self._provider_strategies.get(provider_id, self._default_strategy)

    def add_listener(self, provider_id: str, listener: EventListener[ConflictEvent]) -> None:
        self._events.subscribe(provider_id, listener)

    def remove_listener(self, provider_id: str, listener: EventListener[ConflictEvent]) -> None:
        self._events.unsubscribe(provider_id, listener)

    # ------------------------------------------------------------------
    # Detection / resolution
    # ------------------------------------------------------------------

    def detect_conflict(self, local: Item, remote: Item) -> Conflict | None:
        conflict_type = classify_conflict(
            local, remote, threshold_seconds=self._threshold_seconds
        )
        if conflict_type is None:
            return None

        conflict = Conflict(
            id=conflict_id(remote.provider_id, remote.url),
            type=conflict_type,
            local=local,
            remote=remote,
            provider_id=remote.provider_id,
            detected_at=self._clock(),
        )
        self._detected_total += 1
        logger.info(
            "conflict_detected",
            extra={
                "provider_id": conflict.provider_id,
                "conflict_id": conflict.id,
                "conflict_type": conflict_type.value,
            },
        )
        self._emit(ConflictEventType.CONFLICT_DETECTED, conflict)
        return conflict

    def resolve(
        self, conflict: Conflict, strategy: ConflictStrategy | None = None
    ) -> ConflictResolution:
        """Resolve ``conflict``; never raises.

        Unknown strategies and internal failures degrade to remote-wins.
        """
        chosen = strategy or self.get_strategy(conflict.provider_id)
        try:
            resolution = self._apply_strategy(conflict, chosen)
        except Exception:
            logger.exception(
                "conflict_resolution_failed",
                extra={"provider_id": conflict.provider_id, "conflict_id": conflict.id},
            )
            resolution = ConflictResolution(
                conflict=conflict,
                strategy=ConflictStrategy.REMOTE_WINS,
                resolved=conflict.remote or conflict.local,
            )

        if not resolution.requires_user_confirmation:
            self._resolved_total += 1
            self._emit(
                ConflictEventType.CONFLICT_RESOLVED, conflict, strategy=resolution.strategy.value
            )
        return resolution

    def _apply_strategy(self, conflict: Conflict, strategy: ConflictStrategy) -> ConflictResolution:
        local, remote = conflict.local, conflict.remote
        if local is None or remote is None:
            return ConflictResolution(conflict=conflict, strategy=strategy, resolved=remote or local)

        if strategy is ConflictStrategy.MANUAL:
            self._pending[conflict.id] = conflict
            logger.info(
                "conflict_queued_for_manual_resolution",
                extra={"provider_id": conflict.provider_id, "conflict_id": conflict.id},
            )
            return ConflictResolution(
                conflict=conflict,
                strategy=strategy,
                resolved=remote,
                requires_user_confirmation=True,
            )
        if not isinstance(strategy, ConflictStrategy):
            strategy = ConflictStrategy.REMOTE_WINS
        return ConflictResolution(
            conflict=conflict, strategy=strategy, resolved=choose_item(local, remote, strategy)
        )

    def preview(self, local: Item, remote: Item) -> tuple[Item, Conflict | None]:
        """Classify and pick a winner without queueing, counting or emitting."""
        conflict_type = classify_conflict(
            local, remote, threshold_seconds=self._threshold_seconds
        )
        if conflict_type is None:
            return remote, None
        conflict = Conflict(
            id=conflict_id(remote.provider_id, remote.url),
            type=conflict_type,
            local=local,
            remote=remote,
            provider_id=remote.provider_id,
            detected_at=self._clock(),
        )
        return choose_item(local, remote, self.get_strategy(remote.provider_id)), conflict

    def resolve_manually(self, conflict_id: str, action: ManualAction) -> ConflictResolution | None:
        """Apply a user's decision to a queued conflict.

        Returns ``None`` when no such conflict is pending. ``delete_both``
        resolves to no item. ``keep_both`` cannot keep two records under one
        URL and falls back to the remote item.
        """
        conflict = self._pending.pop(conflict_id, None)
        if conflict is None:
            logger.warning("conflict_not_found", extra={"conflict_id": conflict_id})
            return None

        if action is ManualAction.KEEP_LOCAL:
            resolved = conflict.local
        elif action is ManualAction.DELETE_BOTH:
            resolved = None
        else:
            if action is ManualAction.KEEP_BOTH:
                logger.warning(
                    "conflict_keep_both_unsupported",
                    extra={"provider_id": conflict.provider_id, "conflict_id": conflict_id},
                )
            resolved = conflict.remote

        self._resolved_total += 1
        logger.info(
            "conflict_resolved_manually",
            extra={
                "provider_id": conflict.provider_id,
                "conflict_id": conflict_id,
                "action": action.value,
            },
        )
        self._emit(ConflictEventType.CONFLICT_RESOLVED, conflict, action=action.value)
        return ConflictResolution(
            conflict=conflict, strategy=ConflictStrategy.MANUAL, resolved=resolved
        )

    # ------------------------------------------------------------------
    # Queue queries
    # ------------------------------------------------------------------

    def get_unresolved_conflicts(self) -> list[Conflict]:
        return list(self._pending.values())

    def get_provider_conflicts(self, provider_id: str) -> list[Conflict]:
        return [c for c in self._pending.values() if c.provider_id == provider_id]

    def get_conflict(self, conflict_id: str) -> Conflict | None:
        return self._pending.get(conflict_id)

    def clear_conflicts(self, provider_id: str | None = None) -> int:
        """Drop pending conflicts (all, or one provider's). Returns how many."""
        if provider_id is None:
            count = len(self._pending)
            self._pending.clear()
        else:
            doomed = [cid for cid, c in self._pending.items() if c.provider_id == provider_id]
            for cid in doomed:
                del self._pending[cid]
            count = len(doomed)
        logger.info("conflicts_cleared", extra={"provider_id": provider_id, "count": count})
        return count

    def get_stats(self) -> dict[str, Any]:
        pending = list(self._pending.values())
        return {
            "total": len(pending),
            "by_type": dict(Counter(c.type.value for c in pending)),
            "by_provider": dict(Counter(c.provider_id for c in pending)),
            "detected_total": self._detected_total,
            "resolved_total": self._resolved_total,
        }

    def _emit(self, event_type: ConflictEventType, conflict: Conflict, **data: Any) -> None:
        self._events.emit(
            ConflictEvent(
                type=event_type.value,
                provider_id=conflict.provider_id,
                timestamp=self._clock(),
                data={"conflict_id": conflict.id, "conflict_type": conflict.type.value, **data},
            )
        )
