"""Tests for engine.py: local edits, ingest and reconciliation across instances."""

import asyncio
import time
from dataclasses import replace
from datetime import timedelta
from unittest.mock import patch

import pytest

from syncfeed.document import Element
from syncfeed.engine import RetiredRecordError, SyncEngine, UnknownRecordError
from syncfeed.models import RecordKey, RecordKind, Tombstone, feed_identity
from syncfeed.store import Store, encode_record
from syncfeed.watcher import ChangedSet, ChangeWatcher

from conftest import FEED_URL, T0, FakeClock, make_entry, sync_dirs


@pytest.fixture
def clock_b():
    return FakeClock(T0 + timedelta(seconds=30))


async def _started(store: Store, device_id: str, clock) -> SyncEngine:
    engine = SyncEngine(store, device_id=device_id, clock=clock)
    await engine.start()
    return engine


async def _subscribed(engine: SyncEngine, *guids: str):
    feed = await engine.subscribe(FEED_URL, title="Test Feed")
    items = await engine.ingest([make_entry(g) for g in guids])
    return feed, items


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_edits_require_start(self, store, clock):
        engine = SyncEngine(store, device_id="laptop", clock=clock)
        with pytest.raises(RuntimeError):
            await engine.subscribe(FEED_URL)

    @pytest.mark.asyncio
    async def test_start_loads_existing_units(self, store, clock):
        first = await _started(store, "laptop", clock)
        feed, items = await _subscribed(first, "article-1", "article-2")
        await first.stop()

        second = await _started(store, "laptop", clock)
        try:
            assert second.feeds() == [feed]
            assert {i.identity for i in second.items()} == {i.identity for i in items}
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_listener_receives_changed_keys(self, store, clock):
        engine = await _started(store, "laptop", clock)
        seen = []
        engine.add_listener(seen.append)
        try:
            feed = await engine.subscribe(FEED_URL)
        finally:
            await engine.stop()

        assert seen == [frozenset({feed.key})]


    @pytest.mark.asyncio
    async def test_slow_disk_does_not_stall_event_loop(self, store, clock):
        engine = await _started(store, "laptop", clock)
        real_save = store.save
        ticks = 0

        def slow_save(record):
            time.sleep(0.3)
            return real_save(record)

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            with patch.object(store, "save", side_effect=slow_save):
                feed = await engine.subscribe(FEED_URL)
        finally:
            task.cancel()
            await engine.stop()

        assert engine.feed(feed.identity) == feed
        assert ticks >= 5


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            feed = await engine.subscribe("HTTPS://Example.com/feed.xml", title="Test Feed")
        finally:
            await engine.stop()

        assert feed.url == FEED_URL
        assert feed.identity == feed_identity(FEED_URL)
        assert feed.subscribed_at == T0
        assert engine.feed(feed.identity) == feed
        assert engine.feed_by_url(FEED_URL) == feed
        assert store.load(feed.key) == [feed]

    @pytest.mark.asyncio
    async def test_duplicate_subscription_rejected(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            await engine.subscribe(FEED_URL)
            with pytest.raises(ValueError, match="Already subscribed"):
                await engine.subscribe(FEED_URL)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe_is_terminal(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            feed, _ = await _subscribed(engine, "article-1")
            clock.advance()
            tombstone = await engine.unsubscribe(feed.identity)

            assert isinstance(tombstone, Tombstone)
            assert engine.feeds() == []
            assert engine.items() == []
            assert engine.is_retired(feed.key)
            with pytest.raises(RetiredRecordError):
                await engine.subscribe(FEED_URL)
            with pytest.raises(RetiredRecordError):
                await engine.rename_feed(feed.identity, "New name")
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_unknown_feed(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            with pytest.raises(UnknownRecordError):
                await engine.unsubscribe("0" * 24)
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_rename_and_restore(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            feed = await engine.subscribe(FEED_URL, title="Test Feed")
            renamed = await engine.rename_feed(feed.identity, "My Feed")
            assert renamed.display_title == "My Feed"
            assert renamed.custom_title_by == "laptop"

            restored = await engine.rename_feed(feed.identity, None)
            assert restored.display_title == "Test Feed"
            assert restored.custom_title_at > renamed.custom_title_at
        finally:
            await engine.stop()


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_creates_new_items_once(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, created = await _subscribed(engine, "article-1", "article-2")
            again = await engine.ingest([make_entry("article-1"), make_entry("article-3")])
        finally:
            await engine.stop()

        assert len(created) == 2
        assert [i.guid for i in again] == ["article-3"]
        assert all(i.first_seen == T0 for i in created)
        assert len(engine.items()) == 3

    @pytest.mark.asyncio
    async def test_entries_for_unknown_feed_are_skipped(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            created = await engine.ingest([make_entry("a", url="https://other.example/rss")])
        finally:
            await engine.stop()

        assert created == []
        assert list(store.data_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_record_fetch(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            feed = await engine.subscribe(FEED_URL)
            engine.record_fetch_error(feed.identity, "HTTP 500")
            assert engine.fetch_errors == {feed.identity: "HTTP 500"}

            clock.advance(60)
            fetched = await engine.record_fetch(feed.identity, feed_title="Upstream Title")
        finally:
            await engine.stop()

        assert fetched.title == "Upstream Title"
        assert fetched.last_fetched_at == clock.now
        assert engine.fetch_errors == {}


class TestReadAndStar:
    @pytest.mark.asyncio
    async def test_mark_read(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1", "article-2")
            marked = await engine.mark_read([items[0].identity, items[0].identity])
            again = await engine.mark_read([items[0].identity])
        finally:
            await engine.stop()

        assert marked == 1
        assert again == 0
        assert engine.item(items[0].identity).read is True
        assert [i.identity for i in engine.items(unread_only=True)] == [items[1].identity]

    @pytest.mark.asyncio
    async def test_mark_feed_read(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            feed, _ = await _subscribed(engine, "article-1", "article-2", "article-3")
            marked = await engine.mark_feed_read(feed.identity)
        finally:
            await engine.stop()

        assert marked == 3
        assert engine.items(unread_only=True) == []

    @pytest.mark.asyncio
    async def test_mark_unknown_item(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            with pytest.raises(UnknownRecordError):
                await engine.mark_read(["f" * 24])
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_star_and_unstar(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1")
            starred = await engine.set_starred(items[0].identity, True)
            assert engine.items(starred_only=True) == [starred]

            unstarred = await engine.set_starred(items[0].identity, False)
        finally:
            await engine.stop()

        assert starred.starred_by == "laptop"
        assert unstarred.starred is False
        assert unstarred.starred_at > starred.starred_at
        assert engine.items(starred_only=True) == []


class TestQueries:
    @pytest.mark.asyncio
    async def test_items_newest_first_with_filters(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            await engine.subscribe(FEED_URL)
            await engine.ingest([
                make_entry("old", published_at=T0 - timedelta(days=2)),
                make_entry("mid", published_at=T0 - timedelta(days=1)),
                make_entry("new", published_at=T0),
            ])
        finally:
            await engine.stop()

        assert [i.guid for i in engine.items()] == ["new", "mid", "old"]
        assert [i.guid for i in engine.items(limit=1)] == ["new"]
        since = (T0 - timedelta(hours=36)).replace(tzinfo=None)
        assert [i.guid for i in engine.items(since=since)] == ["new", "mid"]
        assert [i.guid for i in engine.items(until=T0 - timedelta(hours=12))] == ["mid", "old"]

    @pytest.mark.asyncio
    async def test_search_and_document(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1", "article-2")
        finally:
            await engine.stop()

        found = engine.search("BODY OF ARTICLE-2")
        assert [i.guid for i in found] == ["article-2"]
        assert engine.search("   ") == []

        tree = engine.document(items[0].identity)
        assert tree.children[0] == Element("p", {}, tree.children[0].children)
        with pytest.raises(UnknownRecordError):
            engine.document("0" * 24)


class TestSync:
    @pytest.mark.asyncio
    async def test_both_instances_mark_read(self, tmp_path, clock, clock_b):
        """Each instance marks the same item read; after syncing both agree."""
        store_a, store_b = Store(tmp_path / "a"), Store(tmp_path / "b")
        a = await _started(store_a, "laptop", clock)
        b = await _started(store_b, "phone", clock_b)
        try:
            _, items = await _subscribed(a, "article-1")
            item_id = items[0].identity
            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.reconcile_all()
            assert b.item(item_id) is not None

            clock.advance(5)
            await a.mark_read([item_id])
            clock_b.advance(5)
            await b.mark_read([item_id])

            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.reconcile_all()
            sync_dirs(store_b.data_dir, store_a.data_dir)
            await a.reconcile_all()
        finally:
            await a.stop()
            await b.stop()

        assert a.item(item_id).read is True
        assert b.item(item_id).read is True
        assert a.item(item_id) == b.item(item_id)
        assert store_a.load(RecordKey(RecordKind.ITEM, item_id)) == store_b.load(RecordKey(RecordKind.ITEM, item_id))

    @pytest.mark.asyncio
    async def test_later_unstar_wins_across_instances(self, tmp_path, clock, clock_b):
        store_a, store_b = Store(tmp_path / "a"), Store(tmp_path / "b")
        a = await _started(store_a, "laptop", clock)
        b = await _started(store_b, "phone", clock_b)
        try:
            _, items = await _subscribed(a, "article-1")
            item_id = items[0].identity
            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.reconcile_all()

            clock.now = T0 + timedelta(seconds=10)
            await a.set_starred(item_id, True)
            # Pretend the phone saw the star, then unstarred later.
            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.reconcile_all()
            clock_b.now = T0 + timedelta(seconds=20)
            await b.set_starred(item_id, False)

            key = RecordKey(RecordKind.ITEM, item_id)
            sync_dirs(store_b.data_dir, store_a.data_dir)
            await a.apply_changes(ChangedSet(keys=frozenset({key})))
        finally:
            await a.stop()
            await b.stop()

        assert a.item(item_id).starred is False
        assert a.item(item_id).starred_by == "phone"

    @pytest.mark.asyncio
    async def test_tombstone_propagates(self, tmp_path, clock, clock_b):
        store_a, store_b = Store(tmp_path / "a"), Store(tmp_path / "b")
        a = await _started(store_a, "laptop", clock)
        b = await _started(store_b, "phone", clock_b)
        try:
            feed, _ = await _subscribed(a, "article-1")
            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.reconcile_all()
            assert b.feeds() == [feed]

            await a.unsubscribe(feed.identity)
            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.apply_changes(ChangedSet(full_rescan=True))
        finally:
            await a.stop()
            await b.stop()

        assert b.feeds() == []
        assert b.items() == []
        assert b.is_retired(feed.key)

    @pytest.mark.asyncio
    async def test_item_before_feed_waits(self, tmp_path, clock, clock_b):
        store_a, store_b = Store(tmp_path / "a"), Store(tmp_path / "b")
        a = await _started(store_a, "laptop", clock)
        b = await _started(store_b, "phone", clock_b)
        try:
            feed, items = await _subscribed(a, "article-1")
            item_path = store_a.unit_path(items[0].key)
            (store_b.data_dir / item_path.name).write_bytes(item_path.read_bytes())
            await b.reconcile_all()
            assert b.item(items[0].identity) is None
            assert b.items() == []

            sync_dirs(store_a.data_dir, store_b.data_dir)
            await b.apply_changes(ChangedSet(keys=frozenset({feed.key})))
        finally:
            await a.stop()
            await b.stop()

        assert b.item(items[0].identity) == items[0]

    @pytest.mark.asyncio
    async def test_stale_copy_is_overwritten_with_merge(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1")
            stale = items[0]
            read = await engine.mark_read([stale.identity])
            assert read == 1

            # A sync tool brings back the unread copy.
            store.unit_path(stale.key).write_bytes(encode_record(stale))
            await engine.apply_changes(ChangedSet(keys=frozenset({stale.key})))
        finally:
            await engine.stop()

        assert engine.item(stale.identity).read is True
        assert store.load(stale.key)[0].read is True

    @pytest.mark.asyncio
    async def test_damaged_unit_is_not_rewritten(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1")
            path = store.unit_path(items[0].key)
            path.write_bytes(path.read_bytes()[:20])

            await engine.reconcile_all()
            assert engine.item(items[0].identity) == items[0]
            assert path.read_bytes() == encode_record(items[0])[:20]

            # A later healthy copy from the sync tool is picked up as usual.
            healthy = replace(items[0], read=True, read_at=T0)
            path.write_bytes(encode_record(healthy))
            await engine.apply_changes(ChangedSet(keys=frozenset({items[0].key})))
        finally:
            await engine.stop()

        assert engine.item(items[0].identity).read is True

    @pytest.mark.asyncio
    async def test_conflicting_copies_are_reported(self, store, clock):
        engine = await _started(store, "laptop", clock)
        try:
            _, items = await _subscribed(engine, "article-1")
            other = replace(items[0], body=b"<p>changed</p>", first_seen=T0 + timedelta(seconds=1))
            copy = store.data_dir / f"item-{items[0].identity} (conflicted copy).json"
            copy.write_bytes(encode_record(other))
            await engine.reconcile_all()
        finally:
            await engine.stop()

        assert len(engine.anomalies) == 1
        assert engine.anomalies[0].fields == ("body",)
        assert engine.item(items[0].identity).body == b"<p>changed</p>"


async def _wait_until(condition, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestWatchedSync:
    @pytest.mark.asyncio
    async def test_changes_arrive_through_real_watcher(self, tmp_path, clock, clock_b):
        """Units copied in by a sync tool, then saved by another instance, reach
        the engine through the watchdog observer alone."""
        store_a, store_b = Store(tmp_path / "a"), Store(tmp_path / "b")
        a = await _started(store_a, "laptop", clock)
        b = await _started(store_b, "phone", clock_b)
        delivered: list[ChangedSet] = []

        async def on_change(changed: ChangedSet) -> None:
            delivered.append(changed)
            await b.apply_changes(changed)

        watcher = ChangeWatcher(store_b, on_change, debounce=0.05, rescan_interval=None)
        await watcher.start()
        try:
            with patch.object(b, "reconcile_all", side_effect=AssertionError("rescan")):
                _, items = await _subscribed(a, "article-1")
                item = items[0]
                sync_dirs(store_a.data_dir, store_b.data_dir)
                await _wait_until(lambda: b.item(item.identity) is not None)

                clock.advance(5)
                starred = await a.set_starred(item.identity, True)
                Store(store_b.data_dir).save(starred)
                await _wait_until(lambda: b.item(item.identity).starred)
        finally:
            await watcher.stop()
            await a.stop()
            await b.stop()

        assert b.item(item.identity) == a.item(item.identity)
        assert any(item.key in changed.keys for changed in delivered)
        assert not any(changed.full_rescan for changed in delivered)
