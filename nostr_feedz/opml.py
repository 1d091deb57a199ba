"""OPML import and export of RSS subscriptions."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from xml.etree import ElementTree as ET

from .models import FeedType, SubscribedFeed

logger = logging.getLogger(__name__)

OPML_TITLE = "Nostr Feedz Subscriptions"


def parse_opml(text: str) -> List[SubscribedFeed]:
    """Return the RSS feeds listed in an OPML document.

    Enclosing folder outlines become tags on the feeds they contain.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ValueError(f"Invalid OPML document: {exc}") from exc

    body = root.find("body")
    if body is None:
        raise ValueError("OPML document is missing the <body> section.")

    feeds: List[SubscribedFeed] = []
    seen = set()

    def walk(outline: ET.Element, folders: List[str]) -> None:
        title = outline.attrib.get("title") or outline.attrib.get("text")
        feed_url = outline.attrib.get("xmlUrl")

        if feed_url:
            feed_url = feed_url.strip()
            if feed_url in seen:
                return
            seen.add(feed_url)
            feeds.append(
                SubscribedFeed(
                    type=FeedType.RSS,
                    url=feed_url,
                    title=title or "Untitled",
                    tags=list(folders),
                )
            )
            logger.debug("Imported feed '%s' (tags=%s)", feed_url, folders)
            return

        nested = folders + [title] if title else folders
        for child in outline.findall("outline"):
            walk(child, nested)

    for outline in body.findall("outline"):
        walk(outline, [])

    logger.info("Loaded %d feeds from OPML", len(feeds))
    return feeds


def load_opml(path: str) -> List[SubscribedFeed]:
    with open(path, encoding="utf-8") as handle:
        return parse_opml(handle.read())


def export_opml(
    feeds: Iterable[SubscribedFeed], *, created: Optional[datetime] = None
) -> str:
    """Render RSS subscriptions as OPML 2.0; Nostr feeds are left out."""
    root = ET.Element("opml", version="2.0")
    head = ET.SubElement(root, "head")
    ET.SubElement(head, "title").text = OPML_TITLE
    ET.SubElement(head, "dateCreated").text = (
        created or datetime.now(timezone.utc)
    ).isoformat()
    body = ET.SubElement(root, "body")

    count = 0
    for feed in feeds:
        if feed.type is not FeedType.RSS or not feed.url:
            continue
        title = feed.title or feed.url
        ET.SubElement(
            body,
            "outline",
            type="rss",
            text=title,
            title=title,
            xmlUrl=feed.url,
        )
        count += 1

    ET.indent(root, space="  ")
    logger.info("Exported %d RSS feeds to OPML", count)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(
        root, encoding="unicode"
    )
