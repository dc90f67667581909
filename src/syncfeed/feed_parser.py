"""RSS/Atom feed fetching and parsing using httpx and feedparser."""

from calendar import timegm
from dataclasses import dataclass
from datetime import datetime, timezone
from html.parser import HTMLParser
from urllib.parse import urljoin, urlparse

import feedparser
import httpx

from syncfeed.models import FetchedEntry, feed_identity

MAX_ENTRIES = 50
FETCH_TIMEOUT = 30.0
USER_AGENT = "syncfeed/0.1"

FEED_LINK_TYPES = (
    "application/rss+xml",
    "application/atom+xml",
    "application/rdf+xml",
)


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    url: str
    title: str
    description: str | None
    site_link: str | None
    entries: list[FetchedEntry]
    warnings: list[str]


class FeedParseError(Exception):
    """Raised when a feed cannot be parsed.

    ``feed_url`` is set when the document was an HTML page that links to a feed.
    """

    def __init__(self, message: str, feed_url: str | None = None):
        super().__init__(message)
        self.feed_url = feed_url


def fetch_and_parse(url: str) -> ParsedFeed:
    """Fetch and parse an RSS or Atom feed from a URL.

    Args:
        url: The feed URL to fetch and parse.

    Returns:
        ParsedFeed with feed metadata and normalized entries.

    Raises:
        FeedParseError: If the URL is invalid, unreachable, or not a valid feed.
            When the URL is an HTML page advertising a feed, the error carries
            that feed's URL.
    """
    validate_url(url)

    try:
        response = httpx.get(
            url,
            timeout=FETCH_TIMEOUT,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
    except httpx.HTTPError as e:
        raise FeedParseError(f"Could not reach URL: {e}") from e

    if response.status_code in (401, 403):
        raise FeedParseError(
            "Feed requires authentication. Ensure the URL is publicly accessible."
        )

    if response.status_code >= 400:
        raise FeedParseError(f"Could not reach URL: HTTP {response.status_code}")

    return parse_feed(
        response.content,
        str(response.url),
        content_type=response.headers.get("content-type"),
    )


def parse_feed(content: bytes | str, url: str, content_type: str | None = None) -> ParsedFeed:
    """Parse feed bytes already retrieved by an HTTP layer.

    Raises:
        FeedParseError: If the content is not a feed. When it is an HTML page
            advertising a feed, the error carries that feed's URL.
    """
    if isinstance(content, bytes):
        content_bytes = content
    else:
        content_bytes = content.encode("utf-8")
    headers = {"content-location": url}
    if content_type:
        headers["content-type"] = content_type

    # Item markup is sanitized by syncfeed.document, so keep it untouched here.
    parsed = feedparser.parse(content_bytes, response_headers=headers, sanitize_html=False)
    try:
        return _to_parsed_feed(parsed, url)
    except FeedParseError:
        links = find_feed_links(content_bytes.decode("utf-8", errors="replace"), base_url=url)
        if links:
            raise FeedParseError(
                f"URL is a web page; it links to a feed at {links[0]}", feed_url=links[0]
            )
        raise


def validate_url(url: str) -> None:
    """Validate that the URL has a valid format."""
    try:
        result = urlparse(url)
        if not result.scheme or not result.netloc or not result.hostname:
            raise FeedParseError("Invalid URL format")
        if result.scheme not in ("http", "https"):
            raise FeedParseError("Invalid URL format: only http and https are supported")
        # Raises ValueError for a malformed port.
        result.port
    except ValueError:
        raise FeedParseError("Invalid URL format")


def find_feed_links(html: str, base_url: str | None = None) -> list[str]:
    """Return feed URLs advertised by an HTML page's <link rel="alternate"> tags."""
    finder = _FeedLinkFinder()
    finder.feed(html)
    finder.close()
    links = []
    for href in finder.links:
        if base_url:
            href = urljoin(base_url, href)
        if href not in links:
            links.append(href)
    return links


def _to_parsed_feed(parsed, url: str) -> ParsedFeed:
    # feedparser leaves version empty for documents it does not recognize as feeds.
    if not parsed.entries and (not parsed.get("version") or not parsed.feed.get("title")):
        raise FeedParseError("URL does not point to a valid RSS or Atom feed")

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(
            f"Feed has formatting issues: {parsed.get('bozo_exception')}"
        )

    identity = feed_identity(url)
    entries = _extract_entries(parsed.entries, identity, warnings)

    return ParsedFeed(
        url=url,
        title=parsed.feed.get("title", "Untitled Feed"),
        description=parsed.feed.get("description") or parsed.feed.get("subtitle"),
        site_link=parsed.feed.get("link"),
        entries=entries[:MAX_ENTRIES],
        warnings=warnings,
    )


def _extract_entries(entries: list, identity: str, warnings: list[str]) -> list[FetchedEntry]:
    """Extract normalized entries from feedparser entries."""
    extracted = []
    for entry in entries:
        try:
            guid = entry.get("id") or entry.get("guid")
            link = entry.get("link")
            title = entry.get("title", "Untitled")
            if not guid and not link and not entry.get("title"):
                warnings.append("Skipping entry with no identifier or title")
                continue

            extracted.append(FetchedEntry(
                feed_identity=identity,
                guid=guid or None,
                link=link or None,
                published_at=_parse_date(entry),
                title=title,
                body=_entry_body(entry).encode("utf-8"),
            ))
        except Exception as e:
            warnings.append(f"Skipping malformed entry: {e}")
            continue

    # Sort by published date descending (newest first)
    extracted.sort(
        key=lambda x: x.published_at or datetime.min.replace(tzinfo=timezone.utc),
        reverse=True,
    )
    return extracted


def _entry_body(entry) -> str:
    for content in entry.get("content") or ():
        value = content.get("value")
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry.

    feedparser normalizes dates to UTC struct_times; they stay in UTC so every
    instance derives the same item identity regardless of its local time zone.
    """
    for field in ("published_parsed", "updated_parsed"):
        time_struct = entry.get(field)
        if time_struct:
            try:
                return datetime.fromtimestamp(timegm(tuple(time_struct)), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError):
                continue
    return None


class _FeedLinkFinder(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.links: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag != "link":
            return
        values = {name: value or "" for name, value in attrs}
        rel = values.get("rel", "").lower().split()
        if "alternate" in rel and values.get("type", "").lower() in FEED_LINK_TYPES:
            href = values.get("href", "").strip()
            if href:
                self.links.append(href)
