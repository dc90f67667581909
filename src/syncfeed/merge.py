"""Field-level merge rules for records held by more than one instance.

``merge`` is a join: commutative, associative and idempotent. Applying it in any
order, any number of times, across any number of instances converges on the
same record, which is what lets a dumb file-sync tool stand in for a server.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from functools import reduce

from syncfeed.models import EPOCH, Feed, Item, Record, RecordKey, Tombstone

ITEM_SOURCE_FIELDS = ("feed_id", "guid", "link", "title", "published_at", "body")
FEED_SOURCE_FIELDS = ("url",)


@dataclass(frozen=True)
class MergeAnomaly:
    """Two copies of one record disagree on fields that never change."""

    key: RecordKey
    fields: tuple[str, ...]
    kept: Record

    def __str__(self) -> str:
        return (
            f"{self.key.kind.value} {self.key.identity}: copies disagree on "
            f"{', '.join(self.fields)}"
        )


AnomalyReporter = Callable[[MergeAnomaly], None]


def merge(local: Record, remote: Record, report: AnomalyReporter | None = None) -> Record:
    """Merge two copies of the same record.

    Args:
        local: The copy held in memory.
        remote: The copy found on disk.
        report: Optional callback receiving a MergeAnomaly when immutable fields disagree.

    Returns:
        The merged record. A Tombstone on either side always wins.

    Raises:
        ValueError: If the records have different keys.
    """
    if local.key != remote.key:
        raise ValueError(f"Cannot merge {local.key} with {remote.key}")

    if isinstance(local, Tombstone) or isinstance(remote, Tombstone):
        return _merge_tombstones(local, remote)

    if isinstance(local, Feed) and isinstance(remote, Feed):
        return _merge_feeds(local, remote, report)
    if isinstance(local, Item) and isinstance(remote, Item):
        return _merge_items(local, remote, report)
    raise ValueError(f"Cannot merge {type(local).__name__} with {type(remote).__name__}")


def merge_all(records: Iterable[Record], report: AnomalyReporter | None = None) -> Record:
    """Fold any number of copies of one record into one."""
    return reduce(lambda a, b: merge(a, b, report), records)


# --- Per-type rules ---


def _merge_tombstones(local: Record, remote: Record) -> Tombstone:
    if isinstance(local, Tombstone) and isinstance(remote, Tombstone):
        return local if local.deleted_at <= remote.deleted_at else remote
    return local if isinstance(local, Tombstone) else remote


def _merge_items(local: Item, remote: Item, report: AnomalyReporter | None) -> Item:
    base = max(local, remote, key=_item_source_rank)
    _check_source(local, remote, ITEM_SOURCE_FIELDS, base, report)

    # read only ever moves forward; starred is a last-writer-wins register.
    starred = max(local, remote, key=_starred_rank)
    return replace(
        base,
        read=local.read or remote.read,
        read_at=_latest(local.read_at, remote.read_at),
        starred=starred.starred,
        starred_at=starred.starred_at,
        starred_by=starred.starred_by,
    )


def _merge_feeds(local: Feed, remote: Feed, report: AnomalyReporter | None) -> Feed:
    # The later subscription wins the source fields, ties broken on the url.
    base = max(local, remote, key=lambda f: (f.subscribed_at, f.url))
    _check_source(local, remote, FEED_SOURCE_FIELDS, base, report)

    fetched = max(local, remote, key=lambda f: (f.title_at or EPOCH, f.title or ""))
    custom = max(
        local,
        remote,
        key=lambda f: (f.custom_title_at or EPOCH, f.custom_title_by, f.custom_title or ""),
    )
    return replace(
        base,
        title=fetched.title,
        title_at=fetched.title_at,
        custom_title=custom.custom_title,
        custom_title_at=custom.custom_title_at,
        custom_title_by=custom.custom_title_by,
        last_fetched_at=_latest(local.last_fetched_at, remote.last_fetched_at),
    )


# --- Helpers ---


def _item_source_rank(item: Item) -> tuple:
    # Later first sighting wins; the source fields break exact ties.
    return (
        item.first_seen,
        item.feed_id,
        item.guid or "",
        item.link or "",
        item.title,
        item.published_at or EPOCH,
        item.body,
    )


def _starred_rank(item: Item) -> tuple:
    return (item.starred_at or EPOCH, item.starred_by, item.starred)


def _check_source(
    local: Record,
    remote: Record,
    fields: tuple[str, ...],
    kept: Record,
    report: AnomalyReporter | None,
) -> None:
    differing = tuple(f for f in fields if getattr(local, f) != getattr(remote, f))
    if differing and report is not None:
        report(MergeAnomaly(key=local.key, fields=differing, kept=kept))


def _latest(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)
