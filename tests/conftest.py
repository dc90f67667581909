"""Shared test fixtures for syncfeed tests."""

import shutil
from unittest.mock import MagicMock
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from syncfeed.models import FetchedEntry, feed_identity
from syncfeed.store import Store


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>&lt;p&gt;Description of the &lt;b&gt;first&lt;/b&gt; article&lt;/p&gt;</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <summary>Summary of entry 1</summary>
    <content type="html">&lt;p&gt;Full content of entry 1&lt;/p&gt;</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
</feed>"""

SAMPLE_HTML_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <title>Example Blog</title>
    <link rel="stylesheet" href="/style.css">
    <link rel="alternate" type="application/rss+xml" title="RSS" href="/feed.xml">
  </head>
  <body><p>Welcome to my blog</p></body>
</html>"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""

FEED_URL = "https://example.com/feed.xml"

T0 = datetime(2026, 2, 13, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def make_entry(guid: str = "article-1", url: str = FEED_URL, **overrides) -> FetchedEntry:
    """Build a FetchedEntry for the feed at ``url``."""
    values = {
        "feed_identity": feed_identity(url),
        "guid": guid,
        "link": f"https://example.com/{guid}",
        "published_at": T0 - timedelta(hours=1),
        "title": f"Title of {guid}",
        "body": f"<p>Body of <b>{guid}</b></p>".encode("utf-8"),
    }
    values.update(overrides)
    return FetchedEntry(**values)


def http_response(
    body: str, url: str = FEED_URL, status_code: int = 200, content_type: str = "application/rss+xml"
) -> MagicMock:
    """Build a stand-in for an httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    response.content = body.encode("utf-8")
    response.url = url
    response.headers = {"content-type": content_type}
    return response


def sync_dirs(source: Path, target: Path) -> None:
    """Copy every unit from one data directory to another, like a sync tool would."""
    for path in sorted(source.glob("*.json")):
        shutil.copyfile(path, target / path.name)


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_html_page():
    """Sample HTML page advertising a feed."""
    return SAMPLE_HTML_PAGE


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    """A Store over an empty temporary data directory."""
    return Store(tmp_path / "data")
