"""RSS/Atom fetching, parsing and feed discovery."""

from __future__ import annotations

import calendar
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import feedparser
import requests
from bs4 import BeautifulSoup

from .models import ParsedFeed, ParsedItem

logger = logging.getLogger(__name__)

USER_AGENT = "Nostr-Feedz/1.0 Feed Reader"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"

COMMON_FEED_PATHS = [
    "/feed",
    "/feed/",
    "/rss",
    "/rss.xml",
    "/atom.xml",
    "/feed.xml",
    "/index.xml",
    "/blog/feed",
    "/blog/rss",
    "/?feed=rss2",
    "/feeds/posts/default",
]

_FEED_LINK_TYPES = [
    "application/rss+xml",
    "application/atom+xml",
    "application/json",
]


class FeedFetchError(RuntimeError):
    """Raised when a feed cannot be downloaded or parsed."""


@dataclass
class DiscoveryResult:
    found: bool
    feed_url: Optional[str] = None
    title: Optional[str] = None
    type: Optional[str] = None
    error: Optional[str] = None


def to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert feedparser's UTC struct_time to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)


def _strip_html(raw_value: str) -> str:
    """Return text content extracted from HTML fragments."""
    soup = BeautifulSoup(raw_value, "html.parser")
    text = soup.get_text(separator=" ", strip=True)
    text = re.sub(r"\s+([.,;:!?])", r"\1", text)
    text = re.sub(r"\s{2,}", " ", text)
    return text.strip()


def _entry_content(entry) -> str:
    content = entry.get("content")
    if content:
        try:
            value = content[0].get("value")
        except (TypeError, KeyError, IndexError, AttributeError):
            value = None
        if value:
            return value
    return entry.get("summary") or ""


def _entry_media(entry) -> List[str]:
    refs: List[str] = []
    for key in ("media_thumbnail", "media_content"):
        for media in entry.get(key) or []:
            url = media.get("url") if isinstance(media, dict) else None
            if url and url not in refs:
                refs.append(url)
    return refs


def _entry_guid(entry, link: Optional[str], title: str) -> str:
    guid = entry.get("id") or link
    if guid:
        return guid
    # Entries with neither id nor link still need a stable key per feed.
    return hashlib.sha256(title.encode("utf-8")).hexdigest()


def parse_feed(content: bytes, url: Optional[str] = None) -> ParsedFeed:
    """Parse an RSS or Atom document into a :class:`ParsedFeed`."""
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries and not parsed.feed.get("title"):
        raise FeedFetchError(
            f"Unsupported feed format: {getattr(parsed, 'bozo_exception', 'unknown')}"
        )

    now = datetime.now(timezone.utc)
    items: List[ParsedItem] = []
    for entry in parsed.entries:
        title = entry.get("title") or "Untitled"
        link = entry.get("link")

        published = None
        for attr in ("published_parsed", "updated_parsed", "created_parsed"):
            published = to_datetime(entry.get(attr))
            if published:
                break

        items.append(
            ParsedItem(
                title=title,
                content=_entry_content(entry),
                published_at=published or now,
                guid=_entry_guid(entry, link, title),
                author=entry.get("author"),
                url=link,
                media_refs=_entry_media(entry),
            )
        )

    description = parsed.feed.get("subtitle") or parsed.feed.get("description")
    return ParsedFeed(
        title=parsed.feed.get("title") or "Untitled Feed",
        items=items,
        description=_strip_html(description) if description else None,
        url=parsed.feed.get("link") or url,
    )


def fetch_and_parse_feed(url: str, timeout: float = 10.0) -> ParsedFeed:
    """Download ``url`` and parse it; raises :class:`FeedFetchError`."""
    parts = urlparse(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise FeedFetchError(f"Invalid feed URL: {url}")

    logger.info("Fetching feed %s", url)
    try:
        response = requests.get(
            url,
            headers={"User-Agent": USER_AGENT, "Accept": FEED_ACCEPT},
            timeout=timeout,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FeedFetchError(f"Unable to fetch feed from {url}: {exc}") from exc

    if not response.content.strip():
        raise FeedFetchError("Empty response from feed URL")

    feed = parse_feed(response.content, url)
    logger.info("Parsed %d items from feed %s", len(feed.items), url)
    return feed


def _get(url: str, timeout: float) -> Optional[requests.Response]:
    try:
        response = requests.get(
            url, headers={"User-Agent": USER_AGENT}, timeout=timeout
        )
    except requests.RequestException as exc:
        logger.debug("Discovery request to %s failed: %s", url, exc)
        return None
    return response if response.ok else None


def check_if_feed(url: str, timeout: float = 10.0) -> DiscoveryResult:
    """Return a positive result when ``url`` itself serves a feed."""
    response = _get(url, timeout)
    if response is None:
        return DiscoveryResult(found=False)

    content_type = response.headers.get("content-type", "")
    text = response.text
    is_atom = "<feed" in text or 'xmlns="http://www.w3.org/2005/Atom"' in text
    if (
        "xml" in content_type
        or "rss" in content_type
        or "atom" in content_type
        or "<rss" in text
        or is_atom
    ):
        kind = "atom" if is_atom and "<rss" not in text else "rss"
        title = feedparser.parse(response.content).feed.get("title")
        return DiscoveryResult(found=True, feed_url=url, title=title, type=kind)

    if "json" in content_type:
        try:
            payload = json.loads(text)
        except ValueError:
            return DiscoveryResult(found=False)
        version = payload.get("version") if isinstance(payload, dict) else None
        if isinstance(version, str) and version.startswith(
            "https://jsonfeed.org/version/"
        ):
            return DiscoveryResult(
                found=True, feed_url=url, title=payload.get("title"), type="json"
            )

    return DiscoveryResult(found=False)


def find_feed_in_html(url: str, timeout: float = 10.0) -> DiscoveryResult:
    """Follow the first feed ``<link>`` advertised by an HTML page."""
    response = _get(url, timeout)
    if response is None:
        return DiscoveryResult(found=False)

    soup = BeautifulSoup(response.text, "html.parser")
    link = soup.find("link", attrs={"type": _FEED_LINK_TYPES, "href": True})
    if link is None:
        return DiscoveryResult(found=False)

    verification = check_if_feed(urljoin(url, link["href"]), timeout)
    if not verification.found:
        return DiscoveryResult(found=False)
    verification.title = link.get("title") or verification.title
    return verification


def try_common_feed_locations(url: str, timeout: float = 10.0) -> DiscoveryResult:
    parts = urlparse(url)
    origin = f"{parts.scheme}://{parts.netloc}"
    for path in COMMON_FEED_PATHS:
        result = check_if_feed(origin + path, timeout)
        if result.found:
            return result
    return DiscoveryResult(found=False)


def discover_feed(url: str, timeout: float = 10.0) -> DiscoveryResult:
    """Locate a feed for ``url``: direct, advertised link, then common paths."""
    candidate = url.strip()
    if not candidate.startswith(("http://", "https://")):
        return DiscoveryResult(
            found=False, error="URL must start with http:// or https://"
        )

    for step in (check_if_feed, find_feed_in_html, try_common_feed_locations):
        result = step(candidate, timeout)
        if result.found:
            logger.info("Discovered feed %s for %s", result.feed_url, candidate)
            return result

    return DiscoveryResult(
        found=False, error="No RSS or Atom feed found at this URL or domain"
    )
