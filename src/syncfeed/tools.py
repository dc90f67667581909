"""Agent tool implementations for syncfeed.

The agent calls tools from a worker thread. Reads use the engine's snapshot
directly; edits are submitted to the engine task on the main event loop.
"""

import asyncio
import json
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

from langchain_core.tools import tool

from syncfeed.document import media_urls, to_text
from syncfeed.engine import RetiredRecordError, SyncEngine, UnknownRecordError
from syncfeed.feed_parser import FeedParseError, fetch_and_parse, validate_url
from syncfeed.models import Feed, Item

SUMMARY_LENGTH = 200

# Module-level engine reference, set during agent initialization
_engine: SyncEngine | None = None
_loop: asyncio.AbstractEventLoop | None = None


def set_engine(engine: SyncEngine, loop: asyncio.AbstractEventLoop) -> None:
    """Set the engine used by all tools and the loop its task runs on."""
    global _engine, _loop
    _engine = engine
    _loop = loop


def _get_engine() -> SyncEngine:
    """Get the engine instance, raising if not set."""
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call set_engine() first.")
    return _engine


def _call(coro: Coroutine) -> Any:
    """Run an engine coroutine on the main loop and wait for its result."""
    return asyncio.run_coroutine_threadsafe(coro, _loop).result()


def _error(message: str, **extra) -> str:
    return json.dumps({"status": "error", "message": message, **extra})


@tool
def subscribe_to_feed(url: str) -> str:
    """Subscribe to an RSS or Atom feed by URL.

    Args:
        url: The URL of the RSS or Atom feed to subscribe to.
    """
    engine = _get_engine()

    try:
        validate_url(url)
    except FeedParseError as e:
        return _error(str(e))

    if engine.feed_by_url(url):
        return _error("Already subscribed to this feed")

    try:
        parsed = fetch_and_parse(url)
    except FeedParseError as e:
        if e.feed_url:
            return _error(str(e), feed_url=e.feed_url)
        return _error(str(e))

    try:
        feed = _call(engine.subscribe(url, title=parsed.title))
    except (ValueError, UnknownRecordError) as e:
        return _error(str(e))

    entries = [entry._replace(feed_identity=feed.identity) for entry in parsed.entries]
    items = _call(engine.ingest(entries))
    _call(engine.record_fetch(feed.identity))

    result = {
        "status": "subscribed",
        "feed": {
            "id": feed.identity,
            "title": feed.display_title,
            "description": parsed.description,
            "url": feed.url,
            "item_count": len(items),
        },
    }

    if parsed.warnings:
        result["warnings"] = parsed.warnings

    return json.dumps(result)


@tool
def get_items(
    feed_identifier: str = "",
    since: str = "",
    until: str = "",
    unread_only: bool = False,
    starred_only: bool = False,
    limit: int = 20,
) -> str:
    """Get feed items, optionally filtered by feed, date range, read or starred status.

    Args:
        feed_identifier: Optional filter by feed id, title or URL.
        since: Optional ISO 8601 date. Only items published after this date.
        until: Optional ISO 8601 date. Only items published before this date.
        unread_only: If true, only return unread items.
        starred_only: If true, only return starred items.
        limit: Maximum number of items to return (default 20).
    """
    engine = _get_engine()

    feed_id = None
    if feed_identifier:
        feed, error = _resolve_feed(engine, feed_identifier)
        if error:
            return error
        feed_id = feed.identity

    items = engine.items(
        feed_id=feed_id,
        unread_only=unread_only,
        starred_only=starred_only,
        since=_parse_iso_date(since),
        until=_parse_iso_date(until),
    )

    return json.dumps({
        "items": [_item_summary(engine, item) for item in items[:limit]],
        "total": len(items),
        "has_more": len(items) > limit,
    })


@tool
def read_item(item_id: str) -> str:
    """Show the full readable text of one item and mark it as read.

    Args:
        item_id: The id of the item to read.
    """
    engine = _get_engine()

    try:
        tree = engine.document(item_id)
        _call(engine.mark_read([item_id]))
    except (UnknownRecordError, RetiredRecordError):
        return _error(f"No item with id '{item_id}'")

    item = engine.item(item_id)
    if item is None:
        return _error(f"No item with id '{item_id}'")
    return json.dumps({
        **_item_summary(engine, item),
        "text": to_text(tree),
        "media": media_urls(tree),
    })


@tool
def list_feeds() -> str:
    """List all subscribed feeds with their current status.

    Returns each feed's id, title, url, status (active or erroring),
    last_fetched_at, unread_count, and last_error if any.
    """
    engine = _get_engine()
    feeds = engine.feeds()
    unread: dict[str, int] = {}
    for item in engine.items(unread_only=True):
        unread[item.feed_id] = unread.get(item.feed_id, 0) + 1

    # The poller updates fetch_errors from another task; read each entry once.
    errors = {feed.identity: engine.fetch_errors.get(feed.identity) for feed in feeds}

    return json.dumps({
        "feeds": [
            {
                "id": feed.identity,
                "title": feed.display_title,
                "url": feed.url,
                "status": "erroring" if errors[feed.identity] else "active",
                "last_fetched_at": feed.last_fetched_at.isoformat() if feed.last_fetched_at else None,
                "unread_count": unread.get(feed.identity, 0),
                **({"last_error": errors[feed.identity]} if errors[feed.identity] else {}),
            }
            for feed in feeds
        ],
        "total": len(feeds),
    })


@tool
def unsubscribe_from_feed(feed_identifier: str) -> str:
    """Unsubscribe from a feed by its id, title or URL.

    Unsubscribing is permanent: the same feed cannot be subscribed to again.

    Args:
        feed_identifier: The id, title or URL of the feed to unsubscribe from.
    """
    engine = _get_engine()

    feed, error = _resolve_feed(engine, feed_identifier)
    if error:
        return error

    try:
        _call(engine.unsubscribe(feed.identity))
    except (UnknownRecordError, RetiredRecordError) as e:
        return _error(str(e))

    return json.dumps({
        "status": "unsubscribed",
        "feed_title": feed.display_title,
    })


@tool
def rename_feed(feed_identifier: str, title: str = "") -> str:
    """Give a feed a custom title, or restore its own title.

    Args:
        feed_identifier: The id, title or URL of the feed.
        title: The new title. Leave empty to restore the feed's own title.
    """
    engine = _get_engine()

    feed, error = _resolve_feed(engine, feed_identifier)
    if error:
        return error

    try:
        renamed = _call(engine.rename_feed(feed.identity, title.strip() or None))
    except (UnknownRecordError, RetiredRecordError) as e:
        return _error(str(e))

    return json.dumps({
        "status": "renamed",
        "id": renamed.identity,
        "title": renamed.display_title,
    })


@tool
def search_items(query: str, limit: int = 20) -> str:
    """Search feed items by keyword across titles and text.

    Args:
        query: The keyword or phrase to search for.
        limit: Maximum number of results to return (default 20).
    """
    engine = _get_engine()

    items = engine.search(query)

    return json.dumps({
        "items": [_item_summary(engine, item) for item in items[:limit]],
        "total": len(items),
        "has_more": len(items) > limit,
    })


@tool
def mark_as_read(
    item_ids: list[str] | None = None,
    feed_identifier: str = "",
) -> str:
    """Mark one or more items as read, or mark all items in a feed as read.

    Read state syncs to every device and cannot be undone.

    Args:
        item_ids: Optional list of specific item IDs to mark as read.
        feed_identifier: Optional feed id, title or URL. Marks all items from this feed as read.
    """
    engine = _get_engine()

    if not item_ids and not feed_identifier:
        return _error("Provide item_ids and/or feed_identifier")

    total_marked = 0

    try:
        if feed_identifier:
            feed, error = _resolve_feed(engine, feed_identifier)
            if error:
                return error
            total_marked += _call(engine.mark_feed_read(feed.identity))

        if item_ids:
            total_marked += _call(engine.mark_read(item_ids))
    except (UnknownRecordError, RetiredRecordError) as e:
        return _error(str(e))

    return json.dumps({
        "status": "success",
        "items_marked": total_marked,
    })


@tool
def star_item(item_id: str) -> str:
    """Star an item to keep it for later.

    Args:
        item_id: The id of the item to star.
    """
    return _set_starred(item_id, True)


@tool
def unstar_item(item_id: str) -> str:
    """Remove the star from an item.

    Args:
        item_id: The id of the item to unstar.
    """
    return _set_starred(item_id, False)


def _set_starred(item_id: str, starred: bool) -> str:
    engine = _get_engine()
    try:
        item = _call(engine.set_starred(item_id, starred))
    except (UnknownRecordError, RetiredRecordError):
        return _error(f"No item with id '{item_id}'")
    return json.dumps({
        "status": "success",
        "id": item.identity,
        "starred": item.starred,
    })


def _resolve_feed(engine: SyncEngine, identifier: str) -> tuple[Feed | None, str | None]:
    """Find the one feed an identifier refers to, or an error payload."""
    feeds = engine.feeds()
    try:
        by_url = engine.feed_by_url(identifier)
    except ValueError:
        by_url = None
    if by_url is not None:
        return by_url, None
    exact = [f for f in feeds if identifier in (f.identity, f.url)]
    if exact:
        return exact[0], None

    needle = identifier.casefold()
    matches = [f for f in feeds if needle in f.display_title.casefold()]
    if not matches:
        return None, _error(f"No feed found matching '{identifier}'")
    if len(matches) > 1:
        return None, _error(
            "Multiple feeds match. Please be more specific.",
            matches=[f.display_title for f in matches],
        )
    return matches[0], None


def _item_summary(engine: SyncEngine, item: Item) -> dict:
    feed = engine.feed(item.feed_id)
    return {
        "id": item.identity,
        "feed_title": feed.display_title if feed else None,
        "title": item.title,
        "link": item.link,
        "summary": to_text(engine.document(item.identity))[:SUMMARY_LENGTH],
        "published_at": item.published_at.isoformat() if item.published_at else None,
        "is_read": item.read,
        "is_starred": item.starred,
    }


def _parse_iso_date(date_str: str) -> datetime | None:
    """Parse an ISO 8601 date string, returning None on failure."""
    if not date_str:
        return None
    try:
        return datetime.fromisoformat(date_str)
    except ValueError:
        return None
