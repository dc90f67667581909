"""Sync engine: the single owner of the in-memory record set.

All mutations, whether a local edit, newly fetched items, or a change found on
disk, run one at a time in the order the engine task takes them from its
inbox. Each one runs in a worker thread so that fsync and file reads do not
stall the event loop. Other tasks and threads send requests to the engine and
read from an immutable snapshot that is replaced after each request, so no
locks are needed inside the process. Across processes the only mechanisms are
one-unit-per-record storage, atomic saves and the join in ``syncfeed.merge``.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any

from syncfeed.document import DocumentTree, build, to_text
from syncfeed.merge import MergeAnomaly, merge_all
from syncfeed.models import (
    EPOCH,
    Feed,
    FetchedEntry,
    Item,
    Record,
    RecordKey,
    RecordKind,
    Tombstone,
    feed_identity,
    item_from_entry,
    new_feed,
    utcnow,
)
from syncfeed.store import Store
from syncfeed.watcher import ChangedSet

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


class UnknownRecordError(LookupError):
    """Raised when an id does not name a live record."""


class RetiredRecordError(ValueError):
    """Raised when an edit targets a record that has been tombstoned."""


@dataclass
class _Request:
    action: Callable[[], Any]
    future: asyncio.Future


class SyncEngine:
    """Owns feeds, items and tombstones for one instance.

    Args:
        store: Where records are persisted.
        device_id: Identifies this instance in last-writer-wins tie-breaks.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        device_id: str,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.device_id = device_id
        self._clock = clock or utcnow
        self._records: dict[RecordKey, Record] = {}
        # Items seen before their feed; released once the feed shows up.
        self._orphans: dict[RecordKey, Record] = {}
        self._snapshot: Mapping[RecordKey, Record] = MappingProxyType({})
        self._changed: set[RecordKey] = set()
        self._listeners: list[Callable[[frozenset[RecordKey]], None]] = []
        self._inbox: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self.anomalies: list[MergeAnomaly] = []
        self.fetch_errors: dict[str, str] = {}

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the engine task and reconcile against everything on disk."""
        if self._task is not None:
            return
        self._inbox = asyncio.Queue()
        self._task = asyncio.create_task(self._run(), name="syncfeed-engine")
        count = await self.reconcile_all()
        logger.info("Loaded %d records from %s", count, self.store.data_dir)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        # Fail whatever was still queued so callers are not left waiting.
        while not self._inbox.empty():
            request = self._inbox.get_nowait()
            if not request.future.done():
                request.future.set_exception(RuntimeError("Engine stopped"))

    def add_listener(self, callback: Callable[[frozenset[RecordKey]], None]) -> None:
        """Register a callback receiving the keys changed by each request."""
        self._listeners.append(callback)

    async def _submit(self, action: Callable[[], Any]) -> Any:
        if self._task is None:
            raise RuntimeError("Engine not started. Call start() first.")
        future = asyncio.get_running_loop().create_future()
        await self._inbox.put(_Request(action, future))
        return await future

    async def _run(self) -> None:
        while True:
            request = await self._inbox.get()
            if request.future.cancelled():
                continue
            try:
                # Actions do blocking disk IO.
                result = await asyncio.to_thread(request.action)
            except asyncio.CancelledError:
                # The worker thread may still be running the action, so nothing
                # is published.
                if not request.future.done():
                    request.future.set_exception(RuntimeError("Engine stopped"))
                raise
            except Exception as e:
                self._publish()
                if not request.future.done():
                    request.future.set_exception(e)
            else:
                self._publish()
                if not request.future.done():
                    request.future.set_result(result)

    def _publish(self) -> None:
        if not self._changed:
            return
        changed = frozenset(self._changed)
        self._changed.clear()
        self._snapshot = MappingProxyType(dict(self._records))
        for listener in self._listeners:
            try:
                listener(changed)
            except Exception as e:
                logger.error("Listener failed: %s", e)

    # --- Reintegration ---

    async def apply_changes(self, changed: ChangedSet) -> int:
        """Merge the units named by a ChangedSet (or everything, for a rescan)."""
        if changed.full_rescan:
            return await self.reconcile_all()
        return await self._submit(lambda: self._reintegrate_keys(changed.keys))

    async def reconcile_all(self) -> int:
        """Merge every unit on disk into memory. Returns the number of records touched."""
        return await self._submit(self._reconcile_all)

    def _reconcile_all(self) -> int:
        by_key: dict[RecordKey, list[Record]] = {}
        for record in self.store.load_all():
            by_key.setdefault(record.key, []).append(record)
        touched = 0
        for key in sorted(by_key, key=_feeds_first):
            if self._integrate(key, by_key[key]):
                touched += 1
        return touched

    def _reintegrate_keys(self, keys: Iterable[RecordKey]) -> int:
        touched = 0
        for key in sorted(keys, key=_feeds_first):
            if self._reintegrate(key):
                touched += 1
        return touched

    def _reintegrate(self, key: RecordKey) -> bool:
        return self._integrate(key, self.store.load(key))

    def _integrate(self, key: RecordKey, on_disk: list[Record]) -> bool:
        """Merge disk copies of ``key`` with memory; write back if disk lags behind."""
        current = self._records.get(key) or self._orphans.get(key)
        candidates = ([current] if current is not None else []) + on_disk
        if not candidates:
            return False
        merged = merge_all(candidates, self._report_anomaly)

        if on_disk and not any(record == merged for record in on_disk):
            self.store.save(merged)
            logger.debug("Wrote back merged %s %s", key.kind.value, key.identity)

        if merged == current:
            return False
        self._adopt(merged)
        return True

    def _adopt(self, record: Record) -> None:
        key = record.key
        if isinstance(record, Item) and RecordKey(RecordKind.FEED, record.feed_id) not in self._records:
            self._orphans[key] = record
            return
        self._orphans.pop(key, None)
        self._records[key] = record
        self._changed.add(key)
        if key.kind is RecordKind.FEED:
            self._release_orphans(key.identity)

    def _release_orphans(self, feed_id: str) -> None:
        waiting = [
            k for k, r in self._orphans.items()
            if isinstance(r, Item) and r.feed_id == feed_id
        ]
        for key in waiting:
            record = self._orphans.pop(key)
            self._records[key] = record
            self._changed.add(key)

    def _report_anomaly(self, anomaly: MergeAnomaly) -> None:
        logger.warning("Data anomaly: %s", anomaly)
        self.anomalies.append(anomaly)

    # --- Local edits ---

    async def subscribe(self, url: str, title: str | None = None) -> Feed:
        """Create a feed record for ``url``.

        Raises:
            ValueError: If already subscribed to this URL.
            RetiredRecordError: If this URL was unsubscribed (deletion is terminal).
        """
        return await self._submit(lambda: self._subscribe(url, title))

    def _subscribe(self, url: str, title: str | None) -> Feed:
        key = RecordKey(RecordKind.FEED, feed_identity(url))
        self._reintegrate(key)
        existing = self._records.get(key)
        if isinstance(existing, Tombstone):
            raise RetiredRecordError("This feed was unsubscribed and cannot be re-added")
        if existing is not None:
            raise ValueError("Already subscribed to this feed")

        feed = new_feed(url, subscribed_at=self._clock(), title=title)
        self.store.save(feed)
        self._reintegrate(key)
        logger.info("Subscribed to %s", feed.url)
        return self._records[key]

    async def unsubscribe(self, feed_id: str) -> Tombstone:
        return await self._submit(lambda: self._unsubscribe(feed_id))

    def _unsubscribe(self, feed_id: str) -> Tombstone:
        feed = self._require(RecordKey(RecordKind.FEED, feed_id))
        self.store.delete(feed.key, deleted_at=self._clock())
        self._reintegrate(feed.key)
        self.fetch_errors.pop(feed_id, None)
        logger.info("Unsubscribed from %s", feed.url)
        return self._records[feed.key]

    async def rename_feed(self, feed_id: str, title: str | None) -> Feed:
        """Override a feed's display title; None restores the feed's own title."""
        def edit(feed: Feed) -> Feed:
            return replace(
                feed,
                custom_title=title or None,
                custom_title_at=self._stamp(feed.custom_title_at),
                custom_title_by=self.device_id,
            )

        return await self._submit(
            lambda: self._edit(RecordKey(RecordKind.FEED, feed_id), edit)
        )

    async def mark_read(self, item_ids: Iterable[str]) -> int:
        """Mark items read. Returns how many were unread before."""
        ids = list(item_ids)
        return await self._submit(lambda: self._mark_read(ids))

    async def mark_feed_read(self, feed_id: str) -> int:
        def action() -> int:
            self._require(RecordKey(RecordKind.FEED, feed_id))
            ids = [
                r.identity for r in self._records.values()
                if isinstance(r, Item) and r.feed_id == feed_id and not r.read
            ]
            return self._mark_read(ids)

        return await self._submit(action)

    def _mark_read(self, item_ids: list[str]) -> int:
        marked = 0
        for identity in item_ids:
            key = RecordKey(RecordKind.ITEM, identity)
            before = self._require(key)
            after = self._edit(
                key,
                lambda item: item if item.read else replace(
                    item, read=True, read_at=self._stamp(item.read_at)
                ),
            )
            if after.read and not before.read:
                marked += 1
        return marked

    async def set_starred(self, item_id: str, starred: bool) -> Item:
        def edit(item: Item) -> Item:
            if item.starred == starred:
                return item
            return replace(
                item,
                starred=starred,
                starred_at=self._stamp(item.starred_at),
                starred_by=self.device_id,
            )

        return await self._submit(
            lambda: self._edit(RecordKey(RecordKind.ITEM, item_id), edit)
        )

    def _edit(self, key: RecordKey, fn: Callable[[Any], Record]) -> Record:
        # Pick up anything already on disk first so the save cannot drop it.
        self._reintegrate(key)
        current = self._require(key)
        edited = fn(current)
        if edited == current:
            return current
        self.store.save(edited)
        self._reintegrate(key)
        return self._records[key]

    def _require(self, key: RecordKey) -> Any:
        record = self._records.get(key)
        if record is None:
            raise UnknownRecordError(f"No {key.kind.value} with id {key.identity}")
        if isinstance(record, Tombstone):
            raise RetiredRecordError(f"{key.kind.value} {key.identity} has been removed")
        return record

    def _stamp(self, previous: datetime | None) -> datetime:
        """Current time, strictly after the field's previous edit."""
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + _TICK
        return now

    # --- Ingest from the fetcher ---

    async def ingest(
        self, entries: Iterable[FetchedEntry], fetched_at: datetime | None = None
    ) -> list[Item]:
        """Turn fetched entries into items. Returns only the newly created ones.

        Entries for unknown or unsubscribed feeds are skipped.
        """
        batch = list(entries)
        return await self._submit(lambda: self._ingest(batch, fetched_at))

    def _ingest(self, entries: list[FetchedEntry], fetched_at: datetime | None) -> list[Item]:
        first_seen = fetched_at or self._clock()
        created = []
        skipped_feeds: set[str] = set()
        for entry in entries:
            feed = self._records.get(RecordKey(RecordKind.FEED, entry.feed_identity))
            if not isinstance(feed, Feed):
                skipped_feeds.add(entry.feed_identity)
                continue
            item = item_from_entry(entry, first_seen=first_seen)
            if item.key in self._records:
                continue
            self._reintegrate(item.key)
            if item.key in self._records:
                continue
            self.store.save(item)
            self._reintegrate(item.key)
            created.append(self._records[item.key])
        for feed_id in sorted(skipped_feeds):
            logger.warning("Ignoring entries for unknown or removed feed %s", feed_id)
        return created

    async def record_fetch(
        self,
        feed_id: str,
        feed_title: str | None = None,
        fetched_at: datetime | None = None,
    ) -> Feed:
        """Note a successful fetch: bump last_fetched_at and the feed's own title."""
        def edit(feed: Feed) -> Feed:
            when = fetched_at or self._clock()
            updated = replace(feed, last_fetched_at=max(when, feed.last_fetched_at or EPOCH))
            if feed_title and feed_title != feed.title:
                updated = replace(updated, title=feed_title, title_at=self._stamp(feed.title_at))
            return updated

        def action() -> Feed:
            self.fetch_errors.pop(feed_id, None)
            return self._edit(RecordKey(RecordKind.FEED, feed_id), edit)

        return await self._submit(action)

    def record_fetch_error(self, feed_id: str, message: str) -> None:
        """Remember the last fetch failure for a feed. Local to this instance."""
        self.fetch_errors[feed_id] = message

    # --- Read side (snapshot, safe from any thread) ---

    def record(self, key: RecordKey) -> Record | None:
        return self._snapshot.get(key)

    def feed(self, feed_id: str) -> Feed | None:
        record = self._snapshot.get(RecordKey(RecordKind.FEED, feed_id))
        return record if isinstance(record, Feed) else None

    def feed_by_url(self, url: str) -> Feed | None:
        return self.feed(feed_identity(url))

    def item(self, item_id: str) -> Item | None:
        record = self._snapshot.get(RecordKey(RecordKind.ITEM, item_id))
        if not isinstance(record, Item) or self.feed(record.feed_id) is None:
            return None
        return record

    def is_retired(self, key: RecordKey) -> bool:
        return isinstance(self._snapshot.get(key), Tombstone)

    def feeds(self) -> list[Feed]:
        """Live feeds, most recently subscribed first."""
        feeds = [r for r in self._snapshot.values() if isinstance(r, Feed)]
        feeds.sort(key=lambda f: (f.subscribed_at, f.identity), reverse=True)
        return feeds

    def items(
        self,
        feed_id: str | None = None,
        unread_only: bool = False,
        starred_only: bool = False,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[Item]:
        """Visible items, newest first. Items of removed feeds are hidden."""
        since, until = _aware(since), _aware(until)
        snapshot = self._snapshot
        live_feeds = {
            r.identity for r in snapshot.values() if isinstance(r, Feed)
        }
        items = []
        for record in snapshot.values():
            if not isinstance(record, Item) or record.feed_id not in live_feeds:
                continue
            if feed_id is not None and record.feed_id != feed_id:
                continue
            if unread_only and record.read:
                continue
            if starred_only and not record.starred:
                continue
            published = record.published_at or record.first_seen
            if since is not None and published < since:
                continue
            if until is not None and published > until:
                continue
            items.append(record)
        items.sort(key=lambda i: (i.published_at or i.first_seen, i.identity), reverse=True)
        return items[:limit] if limit is not None else items

    def search(self, query: str, limit: int | None = None) -> list[Item]:
        """Case-insensitive match against item titles and their readable text."""
        needle = query.casefold().strip()
        if not needle:
            return []
        matches = [
            item for item in self.items()
            if needle in item.title.casefold()
            or needle in to_text(build(item.body, base_url=item.link)).casefold()
        ]
        return matches[:limit] if limit is not None else matches

    def document(self, item_id: str) -> DocumentTree:
        """Build the renderable tree for an item's body."""
        item = self.item(item_id)
        if item is None:
            raise UnknownRecordError(f"No item with id {item_id}")
        return build(item.body, base_url=item.link)


def _feeds_first(key: RecordKey) -> tuple:
    return (key.kind is not RecordKind.FEED, key.identity)


def _aware(dt: datetime | None) -> datetime | None:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
