"""Desktop-style notifications and the unread badge for the polling client."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .client_api import RemoteItem, item_target_url, sanitize_url

logger = logging.getLogger(__name__)

NOTIFICATION_TTL = 60.0
DEFAULT_THRESHOLD = 3
BATCH_TITLE = "New items in your feeds"

ITEM_BUTTONS = ["Open", "Mark as Read"]
BATCH_BUTTONS = ["Open App", "Mark All as Read"]


def format_badge_text(count: int) -> str:
    if count <= 0:
        return ""
    return "99+" if count > 99 else str(count)


@dataclass
class Notification:
    id: str
    title: str
    message: str
    buttons: List[str] = field(default_factory=list)
    context: Optional[str] = None
    item_id: Optional[str] = None
    target_url: Optional[str] = None

    @property
    def is_batch(self) -> bool:
        return self.item_id is None


class NotificationSink(Protocol):
    def show(self, notification: Notification) -> None:
        ...

    def clear(self, notification_id: str) -> None:
        ...


class BadgeSink(Protocol):
    def set_text(self, text: str) -> None:
        ...


class LoggingNotificationSink:
    """Writes notifications to the log instead of a desktop service."""

    def show(self, notification: Notification) -> None:
        logger.info(
            "[notification] %s: %s%s",
            notification.title,
            notification.message,
            f" ({notification.target_url})" if notification.target_url else "",
        )

    def clear(self, notification_id: str) -> None:
        logger.debug("Cleared notification %s", notification_id)


class LoggingBadge:
    def __init__(self) -> None:
        self.text = ""

    def set_text(self, text: str) -> None:
        self.text = text
        logger.info("Unread badge: %s", text or "(empty)")


class NotificationCenter:
    """Decides what to show for new items and routes clicks to actions.

    Shown notifications are remembered for ``ttl`` seconds so clicks and
    button presses can be resolved; expired entries are dropped on access.
    """

    def __init__(
        self,
        sink: NotificationSink,
        web_app_url: str,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        ttl: float = NOTIFICATION_TTL,
        clock: Callable[[], float] = time.monotonic,
        open_url: Optional[Callable[[str], None]] = None,
        mark_read: Optional[Callable[[str], None]] = None,
        mark_all_read: Optional[Callable[[], None]] = None,
    ):
        self.sink = sink
        self.web_app_url = web_app_url
        self.threshold = threshold
        self.ttl = ttl
        self._clock = clock
        self.open_url = open_url or (lambda url: logger.info("Open %s", url))
        self.mark_read = mark_read or (lambda item_id: None)
        self.mark_all_read = mark_all_read or (lambda: None)
        self._active: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    def _remember(self, notification: Notification) -> None:
        with self._lock:
            self._purge()
            self._active[notification.id] = (notification, self._clock() + self.ttl)

    def _purge(self) -> None:
        now = self._clock()
        expired = [key for key, (_, deadline) in self._active.items() if deadline <= now]
        for key in expired:
            del self._active[key]

    def lookup(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            self._purge()
            entry = self._active.get(notification_id)
        return entry[0] if entry else None

    def active_count(self) -> int:
        with self._lock:
            self._purge()
            return len(self._active)

    def _forget(self, notification_id: str) -> None:
        with self._lock:
            self._active.pop(notification_id, None)
        self.sink.clear(notification_id)

    def item_notification(self, item: RemoteItem) -> Notification:
        return Notification(
            id=f"item-{item.id}-{self._now_ms()}",
            title=item.feed_title,
            message=item.title,
            context=item.author,
            buttons=list(ITEM_BUTTONS),
            item_id=item.id,
            target_url=item_target_url(item.link, self.web_app_url, item.id),
        )

    def batch_notification(self, count: int) -> Notification:
        suffix = "s" if count > 1 else ""
        return Notification(
            id=f"batch-{self._now_ms()}",
            title=BATCH_TITLE,
            message=f"{count} new item{suffix} available",
            buttons=list(BATCH_BUTTONS),
            target_url=sanitize_url(self.web_app_url),
        )

    def notify_new_items(self, items: Sequence[RemoteItem]) -> List[Notification]:
        """One notification per item up to the threshold, else one summary."""
        if not items:
            return []
        if len(items) <= self.threshold:
            shown = [self.item_notification(item) for item in items]
        else:
            shown = [self.batch_notification(len(items))]
        for notification in shown:
            self._remember(notification)
            self.sink.show(notification)
        return shown

    def _open_item(self, notification: Notification) -> None:
        if notification.target_url:
            self.open_url(notification.target_url)
            self.mark_read(notification.item_id)

    def _open_app(self) -> None:
        app_url = sanitize_url(self.web_app_url)
        if app_url:
            self.open_url(app_url)

    def handle_click(self, notification_id: str) -> None:
        notification = self.lookup(notification_id)
        if notification is not None and not notification.is_batch:
            self._open_item(notification)
        else:
            self._open_app()
        self._forget(notification_id)

    def handle_button(self, notification_id: str, button_index: int) -> None:
        notification = self.lookup(notification_id)
        if notification is None:
            logger.debug("Notification %s expired before button press", notification_id)
        elif notification.is_batch:
            if button_index == 0:
                self._open_app()
            elif button_index == 1:
                self.mark_all_read()
        elif button_index == 0:
            self._open_item(notification)
        elif button_index == 1:
            self.mark_read(notification.item_id)
        self._forget(notification_id)

    def handle_closed(self, notification_id: str) -> None:
        with self._lock:
            self._active.pop(notification_id, None)
