"""Data models for syncfeed.

Every record is an immutable value. Identities are pure functions of source
fields so that independent instances agree on them without talking to each
other.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple
from urllib.parse import urlsplit, urlunsplit

# Lower bound used wherever an unset timestamp takes part in a comparison.
EPOCH = datetime.min.replace(tzinfo=timezone.utc)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stable_id(*parts: str) -> str:
    h = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return h[:24]


class RecordKind(str, Enum):
    FEED = "feed"
    ITEM = "item"


class RecordKey(NamedTuple):
    kind: RecordKind
    identity: str


class MediaStatus(str, Enum):
    PENDING = "pending"
    CACHED = "cached"
    FAILED = "failed"


@dataclass(frozen=True)
class Feed:
    """A subscribed RSS/Atom source.

    ``title`` is what the feed calls itself on the last fetch; ``custom_title``
    is a user override and wins for display when set.
    """

    identity: str
    url: str
    subscribed_at: datetime
    title: str | None = None
    title_at: datetime | None = None
    custom_title: str | None = None
    custom_title_at: datetime | None = None
    custom_title_by: str = ""
    last_fetched_at: datetime | None = None

    @property
    def key(self) -> RecordKey:
        return RecordKey(RecordKind.FEED, self.identity)

    @property
    def display_title(self) -> str:
        return self.custom_title or self.title or self.url


@dataclass(frozen=True)
class Item:
    """A single entry from a feed.

    Only the read and starred state ever changes after creation.
    """

    identity: str
    feed_id: str
    title: str
    guid: str | None = None
    link: str | None = None
    published_at: datetime | None = None
    body: bytes = b""
    first_seen: datetime = EPOCH
    read: bool = False
    read_at: datetime | None = None
    starred: bool = False
    starred_at: datetime | None = None
    starred_by: str = ""

    @property
    def key(self) -> RecordKey:
        return RecordKey(RecordKind.ITEM, self.identity)


@dataclass(frozen=True)
class Tombstone:
    """Terminal marker left in place of a deleted record."""

    kind: RecordKind
    identity: str
    deleted_at: datetime

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.kind, self.identity)


@dataclass(frozen=True)
class MediaRef:
    """Image or playable media referenced from item markup.

    The media cache owns fetching and ``cache_path``; only the identity scheme
    lives here.
    """

    identity: str
    url: str
    cache_path: str | None = None
    status: MediaStatus = MediaStatus.PENDING


Record = Feed | Item | Tombstone


class FetchedEntry(NamedTuple):
    """Normalized entry handed over by the feed fetcher."""

    feed_identity: str
    guid: str | None
    link: str | None
    published_at: datetime | None
    title: str
    body: bytes


# --- Identity ---


def canonical_url(url: str) -> str:
    """Normalize a feed URL so trivially different spellings share an identity."""
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if parts.port is not None and _DEFAULT_PORTS.get(scheme) != parts.port:
        netloc = f"{host}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo += f":{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def feed_identity(url: str) -> str:
    return stable_id("feed", canonical_url(url))


def item_identity(
    feed_id: str,
    guid: str | None,
    link: str | None,
    title: str,
    published_at: datetime | None,
) -> str:
    """Derive an item's identity from its source fields.

    Falls back from guid to link to (title, publish date). A feed that reuses a
    guid for different content, or two guid-less items with the same title and
    date, will collapse into one item.
    """
    if guid:
        return stable_id("guid", feed_id, guid)
    if link:
        return stable_id("link", feed_id, link)
    return stable_id("title", feed_id, title, _dt_to_utc_str(published_at))


def media_identity(url: str) -> str:
    return stable_id("media", url)


def _dt_to_utc_str(dt: datetime | None) -> str:
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


# --- Constructors ---


def new_feed(url: str, subscribed_at: datetime, title: str | None = None) -> Feed:
    url = canonical_url(url)
    return Feed(
        identity=feed_identity(url),
        url=url,
        subscribed_at=subscribed_at,
        title=title,
        title_at=subscribed_at if title else None,
    )


def item_from_entry(entry: FetchedEntry, first_seen: datetime) -> Item:
    published_at = entry.published_at
    if published_at is not None and published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    return Item(
        identity=item_identity(
            entry.feed_identity, entry.guid, entry.link, entry.title, published_at
        ),
        feed_id=entry.feed_identity,
        title=entry.title,
        guid=entry.guid or None,
        link=entry.link or None,
        published_at=published_at,
        body=entry.body,
        first_seen=first_seen,
    )


def media_ref(url: str) -> MediaRef:
    return MediaRef(identity=media_identity(url), url=url)
