"""Client-side polling: periodic refresh, badge, notifications and auth."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import nostr
from .client_api import RemoteItem, WebAppClient
from .client_store import ClientState, FeedCache, StateStore
from .models import NostrAuthData
from .notifications import (
    BadgeSink,
    LoggingBadge,
    LoggingNotificationSink,
    NotificationCenter,
    NotificationSink,
    format_badge_text,
)
from .retry import RetryOptions

logger = logging.getLogger(__name__)

MANUAL_REFRESH_COOLDOWN = 5 * 60.0
TIMER_INITIAL_DELAY = 60.0
RECENT_ITEMS_LIMIT = 50
FETCH_ITEMS_LIMIT = 50
NOT_AUTHENTICATED = "Not authenticated"
COOLDOWN_NOTE = "Cooldown active"


@dataclass
class RefreshOutcome:
    new_item_count: int = 0
    error: Optional[str] = None
    note: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class RecurringTimer:
    """Calls ``callback`` after ``initial_delay`` and then every ``interval``."""

    def __init__(
        self, interval: float, callback: Callable[[], object], initial_delay: float
    ):
        self.interval = interval
        self.initial_delay = initial_delay
        self.callback = callback
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name="feed-poller", daemon=True
        )

    def _run(self) -> None:
        delay = self.initial_delay
        while not self._stop.wait(delay):
            try:
                self.callback()
            except Exception:
                logger.exception("Scheduled refresh failed")
            delay = self.interval

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()


class PollingScheduler:
    """Keeps the local cache in step with the web app for one user.

    Refreshes are serialized by a lock, so timer ticks and manual calls run
    one after the other.
    """

    def __init__(
        self,
        store: StateStore,
        cache: FeedCache,
        *,
        badge: Optional[BadgeSink] = None,
        sink: Optional[NotificationSink] = None,
        client_factory: Optional[Callable[[ClientState], WebAppClient]] = None,
        open_url: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        cooldown: float = MANUAL_REFRESH_COOLDOWN,
        initial_delay: float = TIMER_INITIAL_DELAY,
        retry: Optional[RetryOptions] = None,
    ):
        self.store = store
        self.cache = cache
        self.state = store.load()
        self.badge = badge or LoggingBadge()
        self.cooldown = cooldown
        self.initial_delay = initial_delay
        self.retry = retry or RetryOptions()
        self.last_manual_refresh: Optional[float] = None
        self._clock = clock
        self._client_factory = client_factory or self._default_client
        self._lock = threading.RLock()
        self._timer: Optional[RecurringTimer] = None
        self.notifications = NotificationCenter(
            sink or LoggingNotificationSink(),
            self.state.settings.web_app_url,
            threshold=self.state.settings.max_notifications_per_refresh,
            open_url=open_url,
            mark_read=self.mark_item_read,
            mark_all_read=self.mark_all_read,
        )

    def _default_client(self, state: ClientState) -> WebAppClient:
        return WebAppClient(
            state.settings.web_app_url,
            auth_token=state.auth_token,
            nostr_auth=state.nostr_auth,
            retry=self.retry,
        )

    def _save(self) -> None:
        self.store.save(self.state)

    def update_badge(self, count: int) -> None:
        self.badge.set_text(format_badge_text(count))

    # -- timer -------------------------------------------------------------

    def setup_timer(self) -> RecurringTimer:
        """Cancel any running timer and start a new one from current settings."""
        self.stop_timer()
        minutes = max(1, self.state.settings.poll_interval_minutes)
        self._timer = RecurringTimer(
            minutes * 60.0, self.background_refresh, self.initial_delay
        )
        self._timer.start()
        logger.info("Polling every %d minute(s)", minutes)
        return self._timer

    def stop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # -- refresh -----------------------------------------------------------

    def _in_cooldown(self, now: float) -> bool:
        return (
            self.last_manual_refresh is not None
            and now - self.last_manual_refresh < self.cooldown
        )

    def manual_refresh(self, force: bool = False) -> RefreshOutcome:
        """User-initiated refresh, limited to one per cooldown window."""
        with self._lock:
            now = self._clock()
            if not force and self._in_cooldown(now):
                logger.info("Manual refresh ignored: cooldown active")
                return RefreshOutcome(note=COOLDOWN_NOTE)
            self.last_manual_refresh = now
        return self.refresh(force_sync=True)

    def background_refresh(self) -> RefreshOutcome:
        if self._in_cooldown(self._clock()):
            logger.debug("Timer refresh skipped: manual refresh was recent")
            return RefreshOutcome(note=COOLDOWN_NOTE)
        return self.refresh(force_sync=False)

    def _serve_cache(self) -> None:
        try:
            feeds = self.cache.get_feeds()
            items = self.cache.get_items(limit=100)
        except SQLAlchemyError as exc:
            logger.warning("Local cache unavailable: %s", exc)
            return
        if feeds:
            self.state.feeds = feeds
            self.state.recent_items = items[:RECENT_ITEMS_LIMIT]
            self.update_badge(self.state.total_unread)

    def refresh(self, force_sync: bool = False) -> RefreshOutcome:
        """Pull feeds and items, persist them, then badge and notify.

        Failures never propagate; the cached data stays in place and the
        error is recorded in the client state.
        """
        with self._lock:
            if not self.state.has_auth:
                self._serve_cache()
                return RefreshOutcome(error=NOT_AUTHENTICATED)

            try:
                new_items = self._sync(force_sync)
            except Exception as exc:
                logger.warning("Feed refresh failed, using cache: %s", exc)
                self._serve_cache()
                self.state.last_sync_error = str(exc)
                self._save()
                return RefreshOutcome(error=str(exc))
            return RefreshOutcome(new_item_count=len(new_items))

    def _sync(self, force_sync: bool) -> List[RemoteItem]:
        client = self._client_factory(self.state)
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            feeds_future = executor.submit(client.get_feeds, force_sync)
            items_future = executor.submit(client.get_feed_items, FETCH_ITEMS_LIMIT)
            feeds = feeds_future.result()
            items = items_future.result()

        self.cache.save_feeds(feeds)
        self.cache.save_items(items)
        self.cache.clear_old_items()

        self.state.feeds = feeds
        self.update_badge(self.state.total_unread)

        seen = self.state.seen_items
        new_items = [item for item in items if not item.is_read and item.id not in seen]
        settings = self.state.settings
        if new_items and settings.notifications_enabled and settings.notify_on_new_items:
            self.notifications.web_app_url = settings.web_app_url
            self.notifications.threshold = settings.max_notifications_per_refresh
            self.notifications.notify_new_items(new_items)

        seen.extend(item.id for item in new_items)
        self.state.recent_items = items[:RECENT_ITEMS_LIMIT]
        self.state.last_sync_time = datetime.now(timezone.utc).isoformat()
        self.state.last_sync_error = None
        self._save()
        logger.info(
            "Synced %d feeds and %d items (%d new)", len(feeds), len(items), len(new_items)
        )
        return new_items

    # -- auth --------------------------------------------------------------

    def login_with_nsec(self, nsec: str) -> NostrAuthData:
        private_key = nostr.decode_nsec(nsec.strip())
        if private_key is None:
            raise ValueError("Invalid nsec key")
        pubkey = nostr.public_key_from_private(private_key)
        return self._set_nostr_auth(
            NostrAuthData(
                method="nsec",
                pubkey=pubkey,
                npub=nostr.encode_npub(pubkey),
                private_key_hex=private_key,
            )
        )

    def login_delegated(self, public_key: str) -> NostrAuthData:
        """Authenticate as ``public_key``; requests are signed by the registered signer."""
        pubkey = nostr.normalize_public_key(public_key)
        if pubkey is None:
            raise ValueError("Invalid public key")
        return self._set_nostr_auth(
            NostrAuthData(method="delegated", pubkey=pubkey, npub=nostr.encode_npub(pubkey))
        )

    def _set_nostr_auth(self, auth: NostrAuthData) -> NostrAuthData:
        with self._lock:
            self.state.nostr_auth = auth
            self._save()
        logger.info("Logged in as %s (%s)", auth.npub, auth.method)
        return auth

    def set_auth_token(self, token: Optional[str]) -> None:
        with self._lock:
            self.state.auth_token = token or None
            self._save()
        if not token:
            self.update_badge(0)

    def logout(self) -> None:
        with self._lock:
            self.state.auth_token = None
            self.state.nostr_auth = None
            self.state.feeds = []
            self.state.recent_items = []
            self.state.seen_items.clear()
            self._save()
        self.update_badge(0)
        logger.info("Logged out")

    # -- item actions ------------------------------------------------------

    def mark_item_read(self, item_id: str) -> bool:
        """Mark an item read remotely and locally, adjusting unread counts."""
        with self._lock:
            if self.state.has_auth:
                try:
                    self._client_factory(self.state).mark_as_read(item_id)
                except Exception as exc:
                    logger.warning("Could not mark %s as read: %s", item_id, exc)
                    return False
            self.cache.mark_item_read(item_id)

            item = next(
                (entry for entry in self.state.recent_items if entry.id == item_id), None
            )
            if item is not None and not item.is_read:
                item.is_read = True
                for feed in self.state.feeds:
                    if feed.title == item.feed_title and feed.unread_count > 0:
                        feed.unread_count -= 1
                        break
                self.update_badge(self.state.total_unread)
            self._save()
            return True

    def mark_all_read(self) -> RefreshOutcome:
        with self._lock:
            if not self.state.has_auth:
                return RefreshOutcome(error=NOT_AUTHENTICATED)
            try:
                self._client_factory(self.state).mark_all_as_read()
            except Exception as exc:
                logger.warning("Could not mark all items read: %s", exc)
                return RefreshOutcome(error=str(exc))
            self.update_badge(0)
            return self.refresh()

    def add_favorite(self, item_id: str) -> None:
        if self.state.has_auth:
            self._client_factory(self.state).add_favorite(item_id)

    def remove_favorite(self, item_id: str) -> None:
        if self.state.has_auth:
            self._client_factory(self.state).remove_favorite(item_id)

    def get_favorites(self) -> List[RemoteItem]:
        if not self.state.has_auth:
            return []
        return self._client_factory(self.state).get_favorites()

    def unread_count(self) -> int:
        return self.state.total_unread

    def update_settings(self, **changes) -> None:
        """Apply setting changes; a new poll interval restarts the timer."""
        with self._lock:
            settings = self.state.settings
            for name, value in changes.items():
                if not hasattr(settings, name):
                    raise ValueError(f"Unknown setting: {name}")
                setattr(settings, name, value)
            self._save()
        if "poll_interval_minutes" in changes and self._timer is not None:
            self.setup_timer()
