"""URL-keyed diff between the local snapshot and a provider's remote items."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from itemsync.sync.models import Conflict, Item, LocalRecord, SyncDiff, UpdateOperation

logger = logging.getLogger(__name__)

ResolvePair = Callable[[Item, Item], "tuple[Item, Conflict | None]"]


def _remote_wins(local: Item, remote: Item) -> tuple[Item, Conflict | None]:
    return remote, None


def index_remote(items: Iterable[Item]) -> dict[str, Item]:
    """Map remote items by URL; the first occurrence of a duplicate URL wins."""
    by_url: dict[str, Item] = {}
    for item in items:
        if not item.url:
            continue
        if item.url in by_url:
            logger.warning(
                "remote_duplicate_url_ignored",
                extra={"provider_id": item.provider_id, "url": item.url},
            )
            continue
        by_url[item.url] = item
    return by_url


def compute_diff(
    local: Iterable[LocalRecord],
    remote: Iterable[Item],
    *,
    resolve: ResolvePair | None = None,
) -> SyncDiff:
    """Partition work into adds, updates and deletes.

    - ``to_add``: remote URLs absent locally
    - ``to_delete``: handles of local records whose URL is absent remotely
    - ``to_update``: matched pairs whose resolved title differs from local

    Matched pairs go through ``resolve`` (remote wins when omitted). A pair
    whose record was kept against the remote version still being served is
    left alone. Resolved titles that differ from the remote title are listed
    in ``kept_local``. A local URL held by more than one handle is matched
    through its first handle; the extra handles are left alone while the URL
    still exists remotely.
    """
    resolve = resolve or _remote_wins
    remote_by_url = index_remote(remote)

    current_by_url: dict[str, LocalRecord] = {}
    diff = SyncDiff()
    for record in local:
        if not record.url:
            continue
        if record.url not in remote_by_url:
            diff.to_delete.append(record.handle)
            continue
        if record.url in current_by_url:
            logger.warning(
                "local_duplicate_url_skipped",
                extra={
                    "provider_id": record.provider_id,
                    "url": record.url,
                    "handle": record.handle,
                },
            )
            continue
        current_by_url[record.url] = record

    for url, remote_item in remote_by_url.items():
        record = current_by_url.get(url)
        if record is None:
            diff.to_add.append(remote_item)
            continue

        if (
            record.kept_against is not None
            and remote_item.last_modified == record.kept_against
        ):
            diff.kept_local[url] = record.title
            diff.unchanged += 1
            continue

        resolved, conflict = resolve(record.to_item(), remote_item)
        if conflict is not None:
            diff.conflicts.append(conflict)
        if resolved.title != remote_item.title:
            diff.kept_local[url] = resolved.title
        if resolved.title == record.title:
            diff.unchanged += 1
            continue
        diff.to_update.append(UpdateOperation(handle=record.handle, item=resolved))

    return diff
