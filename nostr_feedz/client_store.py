"""Local state for the polling client: settings, auth, seen ids and item cache."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    String,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .client_api import RemoteFeed, RemoteItem
from .db import make_engine
from .models import NostrAuthData

logger = logging.getLogger(__name__)

MAX_SEEN_ITEMS = 1000
DEFAULT_WEB_APP_URL = "https://nostrfeedz.com"
DEFAULT_POLL_INTERVAL = 5
CACHE_MAX_AGE = timedelta(days=7)


@dataclass
class ClientSettings:
    web_app_url: str = DEFAULT_WEB_APP_URL
    poll_interval_minutes: int = DEFAULT_POLL_INTERVAL
    notifications_enabled: bool = True
    notify_on_new_items: bool = True
    max_notifications_per_refresh: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webAppUrl": self.web_app_url,
            "pollIntervalMinutes": self.poll_interval_minutes,
            "notificationsEnabled": self.notifications_enabled,
            "notifyOnNewItems": self.notify_on_new_items,
            "maxNotificationsPerRefresh": self.max_notifications_per_refresh,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ClientSettings":
        defaults = cls()
        if not isinstance(data, dict):
            return defaults
        return cls(
            web_app_url=data.get("webAppUrl") or defaults.web_app_url,
            poll_interval_minutes=int(
                data.get("pollIntervalMinutes") or defaults.poll_interval_minutes
            ),
            notifications_enabled=bool(
                data.get("notificationsEnabled", defaults.notifications_enabled)
            ),
            notify_on_new_items=bool(
                data.get("notifyOnNewItems", defaults.notify_on_new_items)
            ),
            max_notifications_per_refresh=int(
                data.get(
                    "maxNotificationsPerRefresh",
                    defaults.max_notifications_per_refresh,
                )
            ),
        )


class SeenItemCache:
    """Ordered record of item ids already surfaced, oldest evicted first."""

    def __init__(self, ids: Optional[Iterable[str]] = None, max_size: int = MAX_SEEN_ITEMS):
        self.max_size = max_size
        self._ids: List[str] = []
        self._index = set()
        self.extend(ids or [])

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._index

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def ids(self) -> List[str]:
        return list(self._ids)

    def extend(self, item_ids: Iterable[str]) -> None:
        for item_id in item_ids:
            if item_id in self._index:
                continue
            self._ids.append(item_id)
            self._index.add(item_id)
        overflow = len(self._ids) - self.max_size
        if overflow > 0:
            for evicted in self._ids[:overflow]:
                self._index.discard(evicted)
            self._ids = self._ids[overflow:]

    def clear(self) -> None:
        self._ids = []
        self._index = set()


@dataclass
class ClientState:
    settings: ClientSettings = field(default_factory=ClientSettings)
    seen_items: SeenItemCache = field(default_factory=SeenItemCache)
    auth_token: Optional[str] = None
    nostr_auth: Optional[NostrAuthData] = None
    last_sync_time: Optional[str] = None
    last_sync_error: Optional[str] = None
    feeds: List[RemoteFeed] = field(default_factory=list)
    recent_items: List[RemoteItem] = field(default_factory=list)

    @property
    def has_auth(self) -> bool:
        return bool(self.auth_token) or bool(self.nostr_auth and self.nostr_auth.is_active)

    @property
    def total_unread(self) -> int:
        return sum(feed.unread_count for feed in self.feeds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settings": self.settings.to_dict(),
            "seenItemIds": self.seen_items.ids,
            "authToken": self.auth_token,
            "nostrAuth": self.nostr_auth.to_dict() if self.nostr_auth else None,
            "lastSyncTime": self.last_sync_time,
            "lastSyncError": self.last_sync_error,
            "feeds": [feed.to_dict() for feed in self.feeds],
            "recentItems": [item.to_dict() for item in self.recent_items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientState":
        return cls(
            settings=ClientSettings.from_dict(data.get("settings")),
            seen_items=SeenItemCache(data.get("seenItemIds") or []),
            auth_token=data.get("authToken"),
            nostr_auth=NostrAuthData.from_dict(data.get("nostrAuth")),
            last_sync_time=data.get("lastSyncTime"),
            last_sync_error=data.get("lastSyncError"),
            feeds=[RemoteFeed.from_dict(entry) for entry in data.get("feeds") or []],
            recent_items=[
                RemoteItem.from_dict(entry) for entry in data.get("recentItems") or []
            ],
        )


class StateStore:
    """JSON file holding :class:`ClientState` between runs."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> ClientState:
        if not self.path.exists():
            return ClientState()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable client state %s: %s", self.path, exc)
            return ClientState()
        if not isinstance(data, dict):
            return ClientState()
        return ClientState.from_dict(data)

    def save(self, state: ClientState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(state.to_dict(), handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)


class CacheBase(DeclarativeBase):
    pass


class CachedFeedModel(CacheBase):
    __tablename__ = "cached_feeds"

    id = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)


class CachedItemModel(CacheBase):
    __tablename__ = "cached_items"

    id = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)
    published_at = Column(String, nullable=False, default="", index=True)
    is_read = Column(Boolean, nullable=False, default=False)
    cached_at = Column(DateTime(timezone=True), nullable=False)


class FeedCache:
    """SQLite copy of the last feed list and items served by the web app."""

    def __init__(self, connection_string: str = "sqlite://"):
        self.engine = make_engine(connection_string)
        CacheBase.metadata.create_all(self.engine)
        self._sessions = sessionmaker(bind=self.engine)

    def save_feeds(self, feeds: Iterable[RemoteFeed]) -> None:
        with self._sessions.begin() as session:
            session.execute(delete(CachedFeedModel))
            session.add_all(
                CachedFeedModel(id=feed.id, payload=feed.to_dict()) for feed in feeds
            )

    def get_feeds(self) -> List[RemoteFeed]:
        with self._sessions() as session:
            rows = session.execute(select(CachedFeedModel)).scalars().all()
            return [RemoteFeed.from_dict(row.payload) for row in rows]

    def save_items(
        self, items: Iterable[RemoteItem], now: Optional[datetime] = None
    ) -> None:
        cached_at = now or datetime.now(timezone.utc)
        with self._sessions.begin() as session:
            for item in items:
                session.merge(
                    CachedItemModel(
                        id=item.id,
                        payload=item.to_dict(),
                        published_at=item.published_at,
                        is_read=item.is_read,
                        cached_at=cached_at,
                    )
                )

    def get_items(self, limit: int = 100, unread_only: bool = False) -> List[RemoteItem]:
        """Newest cached items first."""
        stmt = select(CachedItemModel).order_by(CachedItemModel.published_at.desc())
        if unread_only:
            stmt = stmt.where(CachedItemModel.is_read.is_(False))
        with self._sessions() as session:
            rows = session.execute(stmt.limit(limit)).scalars().all()
            items = []
            for row in rows:
                item = RemoteItem.from_dict(row.payload)
                item.is_read = row.is_read
                items.append(item)
            return items

    def mark_item_read(self, item_id: str) -> None:
        with self._sessions.begin() as session:
            row = session.get(CachedItemModel, item_id)
            if row is not None:
                row.is_read = True

    def clear_old_items(
        self, max_age: timedelta = CACHE_MAX_AGE, now: Optional[datetime] = None
    ) -> int:
        """Drop read items cached before ``now - max_age``."""
        cutoff = (now or datetime.now(timezone.utc)) - max_age
        with self._sessions.begin() as session:
            result = session.execute(
                delete(CachedItemModel).where(
                    CachedItemModel.cached_at < cutoff,
                    CachedItemModel.is_read.is_(True),
                )
            )
            removed = result.rowcount or 0
        if removed:
            logger.debug("Pruned %d cached items older than %s", removed, cutoff)
        return removed

    def search_items(self, query: str, limit: int = 50) -> List[RemoteItem]:
        needle = query.lower()
        return [
            item
            for item in self.get_items(limit=500)
            if needle in item.title.lower()
            or needle in item.feed_title.lower()
            or needle in (item.content or "").lower()
        ][:limit]

    def clear(self) -> None:
        with self._sessions.begin() as session:
            session.execute(delete(CachedItemModel))
            session.execute(delete(CachedFeedModel))
