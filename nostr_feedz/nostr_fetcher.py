"""Fetch long-form posts, videos and profiles for a Nostr author."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from . import nostr
from .models import NostrPost, Profile
from .relays import Event, RelayError, RelayPool

logger = logging.getLogger(__name__)

KIND_PROFILE = 0
KIND_LONG_FORM = 30023
VIDEO_KINDS = [21, 22]


@dataclass
class FeedValidation:
    """Whether an author key resolves and has anything to subscribe to."""

    valid: bool
    has_content: bool = False
    has_videos: bool = False
    profile: Optional[Profile] = None


def _author_hex(npub: str) -> str:
    pubkey = nostr.normalize_public_key(npub)
    if pubkey is None:
        raise ValueError(f"Invalid npub: {npub!r}")
    return pubkey


def _timestamp(value: Optional[str], fallback: int) -> datetime:
    if value:
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.debug("Ignoring unusable published_at %r", value)
    return datetime.fromtimestamp(fallback, tz=timezone.utc)


_MALFORMED_EVENT_ERRORS = (
    KeyError,
    TypeError,
    ValueError,
    AttributeError,
    OverflowError,
    OSError,
)


def _authentic(event: Event, author: str) -> bool:
    """True when ``event`` is signed by ``author`` and carries a usable timestamp."""
    if (
        event.get("pubkey") != author
        or not isinstance(event.get("created_at"), int)
        or not nostr.verify_event(event)
    ):
        logger.warning("Dropping unverifiable event %s", event.get("id"))
        return False
    return True


def _parse_events(
    events: List[Event], parse: Callable[[Event], NostrPost]
) -> List[NostrPost]:
    posts: List[NostrPost] = []
    for event in events:
        try:
            posts.append(parse(event))
        except _MALFORMED_EVENT_ERRORS as exc:
            logger.warning("Skipping malformed event %s: %s", event.get("id"), exc)
    return posts


def parse_long_form_event(event: Event) -> NostrPost:
    """Map a kind 30023 event onto a :class:`NostrPost`."""
    title = summary = identifier = published = None
    topics: List[str] = []

    for tag in event.get("tags", []):
        if len(tag) < 2 or not tag[1]:
            continue
        name, value = tag[0], tag[1]
        if name == "title":
            title = value
        elif name == "summary":
            summary = value
        elif name == "published_at":
            published = value
        elif name == "d":
            identifier = value
        elif name == "t":
            topics.append(value)

    return NostrPost(
        id=event["id"],
        title=title or "Untitled",
        content=event.get("content", ""),
        author=nostr.encode_npub(event["pubkey"]),
        published_at=_timestamp(published, event.get("created_at", 0)),
        kind=event.get("kind", KIND_LONG_FORM),
        url=identifier,
        summary=summary,
        tags=topics,
    )


def parse_video_event(event: Event) -> NostrPost:
    """Map a kind 21/22 event, reading media details from its ``imeta`` tag."""
    title = published = video_url = thumbnail = None
    duration: Optional[float] = None
    topics: List[str] = []

    for tag in event.get("tags", []):
        if not tag:
            continue
        name = tag[0]
        if name == "imeta":
            for param in tag[1:]:
                if param.startswith("url "):
                    video_url = param[4:].strip()
                elif param.startswith("image ") and not thumbnail:
                    thumbnail = param[6:].strip()
                elif param.startswith("duration "):
                    try:
                        duration = float(param[9:].strip())
                    except ValueError:
                        duration = None
            continue
        if len(tag) < 2 or not tag[1]:
            continue
        if name == "title":
            title = tag[1]
        elif name == "published_at":
            published = tag[1]
        elif name == "t":
            topics.append(tag[1])

    media = [ref for ref in (video_url, thumbnail) if ref]
    return NostrPost(
        id=event["id"],
        title=title or "Untitled Video",
        content=event.get("content", ""),
        author=nostr.encode_npub(event["pubkey"]),
        published_at=_timestamp(published, event.get("created_at", 0)),
        kind=event.get("kind", VIDEO_KINDS[0]),
        url=video_url,
        tags=topics,
        media_refs=media,
        duration=duration,
    )


class NostrFeedFetcher:
    """Reads author content through a :class:`RelayPool`."""

    def __init__(self, pool: RelayPool):
        self.pool = pool

    def _query(
        self, kinds: List[int], npub: str, limit: int, since: Optional[datetime]
    ) -> List[Event]:
        author = _author_hex(npub)
        filter_ = {"kinds": kinds, "authors": [author], "limit": limit}
        if since is not None:
            filter_["since"] = int(since.timestamp())
        events = [
            event for event in self.pool.query(filter_) if _authentic(event, author)
        ]
        return sorted(events, key=lambda item: item.get("created_at", 0), reverse=True)

    def fetch_long_form_posts(
        self, npub: str, limit: int = 50, since: Optional[datetime] = None
    ) -> List[NostrPost]:
        events = self._query([KIND_LONG_FORM], npub, limit, since)
        logger.info("Fetched %d long-form posts for %s", len(events), npub)
        return _parse_events(events, parse_long_form_event)

    def fetch_video_events(
        self, npub: str, limit: int = 50, since: Optional[datetime] = None
    ) -> List[NostrPost]:
        events = self._query(VIDEO_KINDS, npub, limit, since)
        logger.info("Fetched %d video events for %s", len(events), npub)
        return _parse_events(events, parse_video_event)

    def get_profile(self, npub: str) -> Optional[Profile]:
        """Return kind 0 metadata for ``npub``; ``None`` when unavailable."""
        try:
            author = _author_hex(npub)
            event = self.pool.get(
                {"kinds": [KIND_PROFILE], "authors": [author], "limit": 1}
            )
        except (ValueError, RelayError) as exc:
            logger.warning("Cannot look up profile for %s: %s", npub, exc)
            return None
        if event is None or not _authentic(event, author):
            return None
        try:
            data = json.loads(event.get("content") or "{}")
        except json.JSONDecodeError:
            logger.warning("Profile for %s has malformed content", npub)
            return None
        if not isinstance(data, dict):
            return None
        return Profile(
            name=data.get("name") or data.get("display_name"),
            about=data.get("about"),
            picture=data.get("picture"),
            nip05=data.get("nip05"),
        )

    def validate_feed(self, npub: str) -> FeedValidation:
        """Check that ``npub`` decodes and report whether it has content."""
        if nostr.normalize_public_key(npub) is None:
            return FeedValidation(valid=False)
        profile = self.get_profile(npub)
        has_posts = bool(self.fetch_long_form_posts(npub, limit=1))
        has_videos = bool(self.fetch_video_events(npub, limit=1))
        return FeedValidation(
            valid=True,
            has_content=has_posts or has_videos,
            has_videos=has_videos,
            profile=profile,
        )
