"""HTTP client for the web app's RPC endpoints."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlparse

import requests

from . import nostr
from .models import NostrAuthData
from .retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")


def sanitize_url(value: Optional[str]) -> Optional[str]:
    """Return ``value`` when it is an absolute http(s) URL, else ``None``."""
    if not value or not isinstance(value, str):
        return None
    parts = urlparse(value.strip())
    if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.netloc:
        return None
    return parts.geturl()


def item_target_url(item_url: Optional[str], web_app_url: str, item_id: str) -> Optional[str]:
    """Where opening an item should lead: its own link or the app's item page."""
    target = sanitize_url(item_url)
    if target:
        return target
    base = sanitize_url(web_app_url)
    if not base:
        return None
    return f"{base.rstrip('/')}/item/{quote(item_id, safe='')}"


@dataclass
class RemoteFeed:
    id: str
    title: str
    type: str
    url: Optional[str] = None
    npub: Optional[str] = None
    unread_count: int = 0
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteFeed":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "Untitled Feed",
            type=data.get("type") or "RSS",
            url=data.get("url"),
            npub=data.get("npub"),
            unread_count=int(data.get("unreadCount") or 0),
            tags=list(data.get("tags") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "url": self.url,
            "npub": self.npub,
            "unreadCount": self.unread_count,
            "tags": list(self.tags),
        }


@dataclass
class RemoteItem:
    id: str
    title: str
    feed_title: str
    published_at: str
    content: Optional[str] = None
    author: Optional[str] = None
    url: Optional[str] = None
    original_url: Optional[str] = None
    is_read: bool = False
    is_favorited: bool = False
    feed_type: str = "RSS"

    @property
    def link(self) -> Optional[str]:
        return self.url or self.original_url

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteItem":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "Untitled",
            feed_title=data.get("feedTitle") or "",
            published_at=data.get("publishedAt") or "",
            content=data.get("content"),
            author=data.get("author"),
            url=data.get("url"),
            original_url=data.get("originalUrl"),
            is_read=bool(data.get("isRead")),
            is_favorited=bool(data.get("isFavorited")),
            feed_type=data.get("feedType") or "RSS",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "feedTitle": self.feed_title,
            "publishedAt": self.published_at,
            "content": self.content,
            "author": self.author,
            "url": self.url,
            "originalUrl": self.original_url,
            "isRead": self.is_read,
            "isFavorited": self.is_favorited,
            "feedType": self.feed_type,
        }


class WebAppClient:
    """Authenticated access to the web app on behalf of one user."""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        nostr_auth: Optional[NostrAuthData] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        retry: Optional[RetryOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        base = sanitize_url(base_url)
        if not base:
            raise ValueError(f"Invalid web app URL: {base_url!r}")
        self.base_url = base.rstrip("/")
        self.auth_token = auth_token
        self.nostr_auth = nostr_auth
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry = retry or RetryOptions()
        self._sleep = sleep

    @property
    def has_auth(self) -> bool:
        return bool(self.auth_token) or bool(self.nostr_auth and self.nostr_auth.is_active)

    def _headers(self, url: str, method: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
            return headers
        auth = self.nostr_auth
        if not auth or not auth.pubkey:
            return headers
        headers["x-nostr-pubkey"] = auth.pubkey
        if auth.method == "none":
            return headers
        private_key = auth.private_key_hex if auth.method == "nsec" else None
        try:
            headers["Authorization"] = nostr.generate_auth_header(
                url, method, auth.pubkey, private_key
            )
        except nostr.NoSigningMethodError:
            logger.debug("No signer available; sending pubkey header only")
        return headers

    def _procedure_url(self, name: str) -> str:
        return f"{self.base_url}/api/trpc/{name}"

    def _query(self, name: str, payload: Dict[str, Any]) -> Any:
        encoded = quote(json.dumps({"json": payload}, separators=(",", ":")), safe="")
        url = f"{self._procedure_url(name)}?input={encoded}"

        def _call() -> Any:
            response = self.session.get(
                url, headers=self._headers(url, "GET"), timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()["result"]["data"]["json"]

        return with_retry(_call, self.retry, sleep=self._sleep)

    def _mutate(self, name: str, payload: Dict[str, Any]) -> None:
        url = self._procedure_url(name)
        response = self.session.post(
            url,
            headers=self._headers(url, "POST"),
            data=json.dumps({"json": payload}),
            timeout=self.timeout,
        )
        response.raise_for_status()

    def get_feeds(self, force_sync: bool = False) -> List[RemoteFeed]:
        data = self._query("feed.getFeeds", {"forceSync": force_sync})
        return [RemoteFeed.from_dict(entry) for entry in data]

    def get_feed_items(self, limit: int = 50) -> List[RemoteItem]:
        data = self._query("feed.getFeedItems", {"limit": limit})
        return [RemoteItem.from_dict(entry) for entry in data["items"]]

    def get_favorites(self, limit: int = 50) -> List[RemoteItem]:
        data = self._query("feed.getFavorites", {"limit": limit})
        return [RemoteItem.from_dict(entry) for entry in data["items"]]

    def mark_as_read(self, item_id: str) -> None:
        self._mutate("feed.markAsRead", {"itemId": item_id})

    def mark_all_as_read(self) -> None:
        self._mutate("feed.markAllAsRead", {})

    def add_favorite(self, item_id: str) -> None:
        self._mutate("feed.addFavorite", {"itemId": item_id})

    def remove_favorite(self, item_id: str) -> None:
        self._mutate("feed.removeFavorite", {"itemId": item_id})
