"""Shared data models for nostr_feedz."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class FeedType(str, Enum):
    """Kinds of subscribable sources."""

    RSS = "RSS"
    NOSTR = "NOSTR"
    NOSTR_VIDEO = "NOSTR_VIDEO"

    @property
    def is_nostr(self) -> bool:
        return self is not FeedType.RSS


@dataclass
class ParsedItem:
    """Candidate item produced by a feed source, prior to ingestion."""

    title: str
    content: str
    published_at: datetime
    guid: str
    author: Optional[str] = None
    url: Optional[str] = None
    media_refs: List[str] = field(default_factory=list)


@dataclass
class ParsedFeed:
    """Result of parsing an RSS or Atom document."""

    title: str
    items: List[ParsedItem]
    description: Optional[str] = None
    url: Optional[str] = None


@dataclass
class NostrPost:
    """Long-form post (kind 30023) or video (kinds 21/22) from an author."""

    id: str
    title: str
    content: str
    author: str
    published_at: datetime
    kind: int
    url: Optional[str] = None
    summary: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    media_refs: List[str] = field(default_factory=list)
    duration: Optional[float] = None

    def to_parsed_item(self) -> ParsedItem:
        return ParsedItem(
            title=self.title,
            content=self.content,
            published_at=self.published_at,
            guid=self.id,
            author=self.author,
            url=self.url,
            media_refs=list(self.media_refs),
        )


@dataclass
class Profile:
    """Kind 0 metadata for an author."""

    name: Optional[str] = None
    about: Optional[str] = None
    picture: Optional[str] = None
    nip05: Optional[str] = None


@dataclass
class SubscribedFeed:
    """Portable view of a subscription used by sync and OPML.

    For Nostr feeds ``url`` holds the author's npub.
    """

    type: FeedType
    url: str
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class SubscriptionList:
    """Canonical snapshot of a user's subscriptions."""

    rss: List[str] = field(default_factory=list)
    nostr: List[str] = field(default_factory=list)
    tags: Dict[str, List[str]] = field(default_factory=dict)
    last_updated: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "rss": list(self.rss),
            "nostr": list(self.nostr),
            "tags": {key: list(value) for key, value in self.tags.items()},
        }
        if self.last_updated is not None:
            payload["lastUpdated"] = self.last_updated
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SubscriptionList":
        if not isinstance(payload, dict):
            raise ValueError("Subscription list payload must be a JSON object.")

        def _strings(value: Any) -> List[str]:
            if not isinstance(value, list):
                return []
            return [item for item in value if isinstance(item, str)]

        raw_tags = payload.get("tags") or {}
        tags = {
            key: _strings(value)
            for key, value in raw_tags.items()
            if isinstance(key, str)
        } if isinstance(raw_tags, dict) else {}

        last_updated = payload.get("lastUpdated")
        return cls(
            rss=_strings(payload.get("rss")),
            nostr=_strings(payload.get("nostr")),
            tags=tags,
            last_updated=last_updated if isinstance(last_updated, int) else None,
        )


@dataclass
class MergeResult:
    """Outcome of merging a remote subscription list into local state."""

    to_add: List[SubscribedFeed] = field(default_factory=list)
    local_only: List[SubscribedFeed] = field(default_factory=list)


@dataclass
class RefreshResult:
    """Summary of a batch refresh run.

    ``refreshed`` includes feeds skipped because they were still within the
    cooldown window; ``skipped`` reports those separately.
    """

    total: int = 0
    refreshed: int = 0
    skipped: int = 0
    new_items: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class NostrAuthData:
    """How the local client proves its identity to the web app.

    ``method`` is ``none``, ``nsec`` (key held locally) or ``delegated``
    (an external signer holds the key).
    """

    method: str = "none"
    pubkey: Optional[str] = None
    npub: Optional[str] = None
    private_key_hex: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return bool(self.pubkey) and self.method != "none"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "pubkey": self.pubkey,
            "npub": self.npub,
            "privateKeyHex": self.private_key_hex,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["NostrAuthData"]:
        if not isinstance(data, dict):
            return None
        return cls(
            method=data.get("method") or "none",
            pubkey=data.get("pubkey"),
            npub=data.get("npub"),
            private_key_hex=data.get("privateKeyHex"),
        )
