"""Background polling loop feeding fetched entries into the sync engine."""

import asyncio
import logging

from syncfeed.engine import SyncEngine
from syncfeed.feed_parser import FeedParseError, fetch_and_parse

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 900  # 15 minutes


async def poll_feed(engine: SyncEngine, feed_id: str) -> int:
    """Fetch one feed and ingest its entries. Returns count of new items.

    Raises:
        FeedParseError: If the feed cannot be fetched or parsed.
    """
    feed = engine.feed(feed_id)
    if feed is None:
        return 0
    parsed = await asyncio.to_thread(fetch_and_parse, feed.url)
    for warning in parsed.warnings:
        logger.debug("Feed '%s': %s", feed.display_title, warning)

    # Entries are keyed by the subscribed feed even if the server redirected.
    entries = [entry._replace(feed_identity=feed.identity) for entry in parsed.entries]
    new_items = await engine.ingest(entries)
    await engine.record_fetch(feed.identity, feed_title=parsed.title)
    return len(new_items)


async def poll_feeds_once(engine: SyncEngine) -> int:
    """Poll all live feeds once. Returns count of new items found."""
    total_new = 0

    for feed in engine.feeds():
        try:
            new_count = await poll_feed(engine, feed.identity)
            if new_count:
                total_new += new_count
                logger.info("Feed '%s': %d new items", feed.display_title, new_count)

        except FeedParseError as e:
            logger.warning("Feed '%s' error: %s", feed.display_title, e)
            engine.record_fetch_error(feed.identity, str(e))
        except Exception as e:
            logger.warning("Feed '%s' unexpected error: %s", feed.display_title, e)
            engine.record_fetch_error(feed.identity, str(e))

    return total_new


async def start_polling(engine: SyncEngine, interval: float = DEFAULT_POLL_INTERVAL) -> None:
    """Run the polling loop indefinitely."""
    logger.info("Poller started (interval: %ds)", interval)

    while True:
        try:
            new_count = await poll_feeds_once(engine)
            if new_count > 0:
                logger.info("Poll cycle complete: %d new items", new_count)
        except Exception as e:
            logger.error("Poll cycle failed: %s", e)

        await asyncio.sleep(interval)
