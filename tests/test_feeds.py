import types
from datetime import datetime, timezone

import pytest
import requests

from nostr_feedz import feeds

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com/</link>
    <description>&lt;p&gt;Notes &lt;b&gt;about&lt;/b&gt; things .&lt;/p&gt;</description>
    <item>
      <title>First post</title>
      <link>https://example.com/first</link>
      <guid>urn:first</guid>
      <pubDate>Tue, 02 Jan 2024 10:00:00 GMT</pubDate>
      <description>Hello &lt;em&gt;world&lt;/em&gt;</description>
      <media:thumbnail url="https://example.com/first.jpg" />
    </item>
    <item>
      <link>https://example.com/second</link>
    </item>
  </channel>
</rss>
"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Site</title>
  <entry>
    <title>Entry</title>
    <id>tag:example.com,2024:1</id>
    <updated>2024-03-01T12:00:00Z</updated>
    <content type="html">&lt;p&gt;Body&lt;/p&gt;</content>
  </entry>
</feed>
"""


def _response(content=b"", content_type="text/html", status=200):
    def raise_for_status():
        if status >= 400:
            raise requests.HTTPError(f"{status} Error")

    return types.SimpleNamespace(
        content=content,
        text=content.decode("utf-8"),
        headers={"content-type": content_type},
        ok=status < 400,
        status_code=status,
        raise_for_status=raise_for_status,
    )


def _serve(monkeypatch, pages):
    requested = []

    def fake_get(url, headers=None, timeout=None):
        requested.append(url)
        if url not in pages:
            return _response(b"not found", status=404)
        page = pages[url]
        if isinstance(page, Exception):
            raise page
        return page

    monkeypatch.setattr(feeds.requests, "get", fake_get)
    return requested


def test_parse_feed_reads_rss_items():
    feed = feeds.parse_feed(RSS, "https://example.com/rss.xml")

    assert feed.title == "Example Blog"
    assert feed.description == "Notes about things."
    assert len(feed.items) == 2

    first = feed.items[0]
    assert first.title == "First post"
    assert first.guid == "urn:first"
    assert first.url == "https://example.com/first"
    assert first.published_at == datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)
    assert "world" in first.content
    assert first.media_refs == ["https://example.com/first.jpg"]


def test_parse_feed_defaults_missing_title_and_guid():
    second = feeds.parse_feed(RSS).items[1]

    assert second.title == "Untitled"
    assert second.guid == "https://example.com/second"
    assert second.published_at.tzinfo is not None


def test_parse_feed_reads_atom_content():
    feed = feeds.parse_feed(ATOM)

    assert feed.title == "Atom Site"
    entry = feed.items[0]
    assert entry.guid == "tag:example.com,2024:1"
    assert entry.content == "<p>Body</p>"
    assert entry.published_at == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_feed_rejects_garbage():
    with pytest.raises(feeds.FeedFetchError):
        feeds.parse_feed(b"this is not a feed")


def test_fetch_and_parse_feed(monkeypatch):
    _serve(monkeypatch, {"https://example.com/rss.xml": _response(RSS, "application/rss+xml")})

    feed = feeds.fetch_and_parse_feed("https://example.com/rss.xml")

    assert feed.title == "Example Blog"


@pytest.mark.parametrize(
    "pages, url",
    [
        ({}, "ftp://example.com/feed"),
        ({}, "https://example.com/missing"),
        ({"https://example.com/empty": _response(b"   ")}, "https://example.com/empty"),
        (
            {"https://example.com/down": requests.ConnectionError("boom")},
            "https://example.com/down",
        ),
    ],
)
def test_fetch_and_parse_feed_errors(monkeypatch, pages, url):
    _serve(monkeypatch, pages)

    with pytest.raises(feeds.FeedFetchError):
        feeds.fetch_and_parse_feed(url)


def test_discover_direct_feed(monkeypatch):
    _serve(monkeypatch, {"https://example.com/atom": _response(ATOM, "application/atom+xml")})

    result = feeds.discover_feed("https://example.com/atom")

    assert result.found
    assert result.feed_url == "https://example.com/atom"
    assert result.type == "atom"
    assert result.title == "Atom Site"


def test_discover_json_feed(monkeypatch):
    body = b'{"version": "https://jsonfeed.org/version/1.1", "title": "JSON Site", "items": []}'
    _serve(monkeypatch, {"https://example.com/feed.json": _response(body, "application/json")})

    result = feeds.discover_feed("https://example.com/feed.json")

    assert result.found and result.type == "json" and result.title == "JSON Site"


def test_discover_follows_advertised_link(monkeypatch):
    html = b"""<html><head>
    <link rel="stylesheet" href="/style.css">
    <link rel="alternate" type="application/rss+xml" title="Posts" href="/posts.rss">
    </head><body>Hi</body></html>"""
    _serve(
        monkeypatch,
        {
            "https://example.com/blog": _response(html),
            "https://example.com/posts.rss": _response(RSS, "application/rss+xml"),
        },
    )

    result = feeds.discover_feed("https://example.com/blog")

    assert result.found
    assert result.feed_url == "https://example.com/posts.rss"
    assert result.title == "Posts"
    assert result.type == "rss"


def test_discover_falls_back_to_common_paths(monkeypatch):
    requested = _serve(
        monkeypatch,
        {
            "https://example.com/page": _response(b"<html><body>plain</body></html>"),
            "https://example.com/rss.xml": _response(RSS, "application/rss+xml"),
        },
    )

    result = feeds.discover_feed("https://example.com/page")

    assert result.feed_url == "https://example.com/rss.xml"
    assert "https://example.com/feed" in requested
    assert "https://example.com/atom.xml" not in requested


def test_discover_reports_errors(monkeypatch):
    _serve(monkeypatch, {"https://example.com/": _response(b"<html></html>")})

    assert feeds.discover_feed("example.com").error == "URL must start with http:// or https://"
    result = feeds.discover_feed("https://example.com/")
    assert not result.found
    assert result.error == "No RSS or Atom feed found at this URL or domain"
