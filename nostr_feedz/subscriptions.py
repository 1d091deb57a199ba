"""Per-user subscription management and reading state."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, sessionmaker

from . import db, nostr
from .feeds import DiscoveryResult, discover_feed, fetch_and_parse_feed
from .models import FeedType, MergeResult, ParsedFeed, ParsedItem, SubscribedFeed
from .nostr_fetcher import NostrFeedFetcher
from .retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

INITIAL_FETCH_LIMIT = 50
FAVORITES_LIMIT = 50


class AlreadySubscribedError(ValueError):
    def __init__(self) -> None:
        super().__init__("Already subscribed to this feed")


@dataclass
class FeedSummary:
    id: str
    type: FeedType
    title: str
    url: Optional[str]
    author_key: Optional[str]
    tags: List[str] = field(default_factory=list)
    unread_count: int = 0
    last_fetched_at: Optional[datetime] = None

    def to_subscribed_feed(self) -> SubscribedFeed:
        return SubscribedFeed(
            type=self.type,
            url=(self.author_key if self.type.is_nostr else self.url) or "",
            title=self.title,
            tags=list(self.tags),
        )


@dataclass
class ItemView:
    id: str
    feed_id: str
    feed_title: str
    title: str
    content: str
    published_at: datetime
    author: Optional[str] = None
    url: Optional[str] = None
    media_refs: List[str] = field(default_factory=list)
    is_read: bool = False
    is_favorite: bool = False


@dataclass
class TagSummary:
    feed_count: int = 0
    unread_count: int = 0


class SubscriptionService:
    """Subscribe users to feeds and track what they have read."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        nostr_fetcher: Optional[NostrFeedFetcher] = None,
        rss_fetcher: Callable[[str], ParsedFeed] = fetch_and_parse_feed,
        discoverer: Callable[[str], DiscoveryResult] = discover_feed,
        retry: Optional[RetryOptions] = None,
    ):
        self.session_factory = session_factory
        self.nostr_fetcher = nostr_fetcher
        self.rss_fetcher = rss_fetcher
        self.discoverer = discoverer
        self.retry = retry or RetryOptions()

    # -- subscribing -------------------------------------------------------

    def _initial_rss_items(self, url: str) -> Optional[ParsedFeed]:
        try:
            return with_retry(lambda: self.rss_fetcher(url), self.retry)
        except Exception as exc:
            # The feed is still created; the next refresh fills it in.
            logger.warning("Initial fetch of %s failed: %s", url, exc)
            return None

    def _initial_nostr_items(self, feed_type: FeedType, npub: str) -> List[ParsedItem]:
        if self.nostr_fetcher is None:
            return []
        if feed_type is FeedType.NOSTR_VIDEO:
            fetch = self.nostr_fetcher.fetch_video_events
        else:
            fetch = self.nostr_fetcher.fetch_long_form_posts
        try:
            posts = with_retry(lambda: fetch(npub, INITIAL_FETCH_LIMIT), self.retry)
        except Exception as exc:
            logger.warning("Initial fetch of %s failed: %s", npub, exc)
            return []
        return [post.to_parsed_item() for post in posts]

    def _subscribe(
        self, session: Session, user_pubkey: str, feed: db.FeedModel, tags: List[str]
    ) -> FeedSummary:
        if db.find_subscription(session, user_pubkey, feed.id) is not None:
            raise AlreadySubscribedError()
        db.add_subscription(session, user_pubkey, feed.id, tags)
        logger.info("User %s subscribed to feed %s", user_pubkey, feed.id)
        return FeedSummary(
            id=feed.id,
            type=feed.feed_type,
            title=feed.title,
            url=feed.url,
            author_key=feed.author_key,
            tags=list(tags),
        )

    def subscribe_rss(
        self,
        user_pubkey: str,
        url: str,
        *,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        discover: bool = True,
    ) -> FeedSummary:
        """Subscribe to an RSS/Atom feed, locating it first when asked."""
        feed_url = url.strip()
        if discover:
            result = self.discoverer(feed_url)
            if not result.found or not result.feed_url:
                raise ValueError(result.error or f"No feed found at {feed_url}")
            feed_url = result.feed_url
            title = title or result.title

        with self.session_factory() as session:
            feed = db.find_feed(session, FeedType.RSS, url=feed_url)
            if feed is None or db.count_items(session, feed.id) == 0:
                parsed = self._initial_rss_items(feed_url)
                if feed is None:
                    final_title = (
                        title
                        or (parsed.title if parsed else None)
                        or urlparse(feed_url).hostname
                        or "Untitled Feed"
                    )
                    feed = db.create_feed(
                        session, FeedType.RSS, final_title, url=feed_url
                    )
                if parsed:
                    db.insert_items_skip_duplicates(session, feed.id, parsed.items)
            return self._subscribe(session, user_pubkey, feed, list(tags or []))

    def subscribe_nostr(
        self,
        user_pubkey: str,
        author: str,
        *,
        tags: Optional[List[str]] = None,
        video: bool = False,
    ) -> FeedSummary:
        """Subscribe to an author's long-form posts (or videos)."""
        pubkey = nostr.normalize_public_key(author)
        if pubkey is None:
            raise ValueError(f"Invalid npub: {author!r}")
        npub = nostr.encode_npub(pubkey)
        feed_type = FeedType.NOSTR_VIDEO if video else FeedType.NOSTR

        with self.session_factory() as session:
            feed = db.find_feed(session, feed_type, author_key=npub)
            if feed is None:
                profile = (
                    self.nostr_fetcher.get_profile(npub) if self.nostr_fetcher else None
                )
                title = (profile.name if profile else None) or f"{npub[:16]}..."
                feed = db.create_feed(session, feed_type, title, author_key=npub)
                db.insert_items_skip_duplicates(
                    session, feed.id, self._initial_nostr_items(feed_type, npub)
                )
            else:
                if "npub1" in feed.title and self.nostr_fetcher is not None:
                    profile = self.nostr_fetcher.get_profile(npub)
                    if profile and profile.name:
                        feed.title = profile.name
                        session.commit()
                if db.count_items(session, feed.id) == 0:
                    db.insert_items_skip_duplicates(
                        session, feed.id, self._initial_nostr_items(feed_type, npub)
                    )
            return self._subscribe(session, user_pubkey, feed, list(tags or []))

    def unsubscribe(self, user_pubkey: str, feed_id: str) -> bool:
        with self.session_factory() as session:
            removed = db.delete_subscription(session, user_pubkey, feed_id)
            if removed:
                db.delete_feed_if_orphaned(session, feed_id)
            return removed

    def update_tags(self, user_pubkey: str, feed_id: str, tags: List[str]) -> None:
        with self.session_factory() as session:
            subscription = db.find_subscription(session, user_pubkey, feed_id)
            if subscription is None:
                raise ValueError(f"Not subscribed to feed {feed_id}")
            subscription.tags = list(dict.fromkeys(tag.strip() for tag in tags if tag.strip()))
            session.commit()

    # -- reading state -----------------------------------------------------

    def mark_read(self, user_pubkey: str, item_id: str) -> None:
        with self.session_factory() as session:
            db.mark_items_read(session, user_pubkey, [item_id])

    def mark_unread(self, user_pubkey: str, item_id: str) -> None:
        with self.session_factory() as session:
            db.mark_item_unread(session, user_pubkey, item_id)

    def mark_feed_read(self, user_pubkey: str, feed_id: str) -> int:
        with self.session_factory() as session:
            item_ids = session.execute(
                select(db.FeedItemModel.id).where(db.FeedItemModel.feed_id == feed_id)
            ).scalars()
            return db.mark_items_read(session, user_pubkey, list(item_ids))

    def mark_all_read(self, user_pubkey: str) -> int:
        with self.session_factory() as session:
            subscribed = select(db.SubscriptionModel.feed_id).where(
                db.SubscriptionModel.user_pubkey == user_pubkey
            )
            item_ids = session.execute(
                select(db.FeedItemModel.id).where(
                    db.FeedItemModel.feed_id.in_(subscribed)
                )
            ).scalars()
            return db.mark_items_read(session, user_pubkey, list(item_ids))

    def add_favorite(self, user_pubkey: str, item_id: str) -> bool:
        with self.session_factory() as session:
            return db.add_favorite(session, user_pubkey, item_id)

    def remove_favorite(self, user_pubkey: str, item_id: str) -> None:
        with self.session_factory() as session:
            db.remove_favorite(session, user_pubkey, item_id)

    # -- queries -----------------------------------------------------------

    def _unread_counts(
        self, session: Session, user_pubkey: str, feed_ids: List[str]
    ) -> Dict[str, int]:
        if not feed_ids:
            return {}
        stmt = (
            select(db.FeedItemModel.feed_id, func.count())
            .outerjoin(
                db.ReadItemModel,
                and_(
                    db.ReadItemModel.item_id == db.FeedItemModel.id,
                    db.ReadItemModel.user_pubkey == user_pubkey,
                ),
            )
            .where(
                db.FeedItemModel.feed_id.in_(feed_ids),
                db.ReadItemModel.item_id.is_(None),
            )
            .group_by(db.FeedItemModel.feed_id)
        )
        return {feed_id: count for feed_id, count in session.execute(stmt).all()}

    def list_feeds(self, user_pubkey: str) -> List[FeedSummary]:
        """Subscribed feeds with their tags and unread counts."""
        with self.session_factory() as session:
            rows = db.list_subscriptions(session, user_pubkey)
            counts = self._unread_counts(
                session, user_pubkey, [feed.id for _, feed in rows]
            )
            return [
                FeedSummary(
                    id=feed.id,
                    type=feed.feed_type,
                    title=feed.title,
                    url=feed.url,
                    author_key=feed.author_key,
                    tags=list(subscription.tags or []),
                    unread_count=counts.get(feed.id, 0),
                    last_fetched_at=db.as_utc(feed.last_fetched_at),
                )
                for subscription, feed in rows
            ]

    def list_subscribed_feeds(self, user_pubkey: str) -> List[SubscribedFeed]:
        return [summary.to_subscribed_feed() for summary in self.list_feeds(user_pubkey)]

    def tag_summary(self, user_pubkey: str) -> Dict[str, TagSummary]:
        summary: Dict[str, TagSummary] = defaultdict(TagSummary)
        for feed in self.list_feeds(user_pubkey):
            for tag in feed.tags:
                summary[tag].feed_count += 1
                summary[tag].unread_count += feed.unread_count
        return dict(summary)

    def list_items(
        self,
        user_pubkey: str,
        *,
        feed_id: Optional[str] = None,
        tag: Optional[str] = None,
        unread_only: bool = False,
        favorites_only: bool = False,
        limit: int = 50,
    ) -> List[ItemView]:
        """Newest items across the user's subscriptions, filtered as requested."""
        feeds = self.list_feeds(user_pubkey)
        if feed_id:
            feeds = [feed for feed in feeds if feed.id == feed_id]
        if tag:
            feeds = [feed for feed in feeds if tag in feed.tags]
        titles = {feed.id: feed.title for feed in feeds}
        if not titles:
            return []

        with self.session_factory() as session:
            read_ids = set(
                session.execute(
                    select(db.ReadItemModel.item_id).where(
                        db.ReadItemModel.user_pubkey == user_pubkey
                    )
                ).scalars()
            )
            favorite_ids = set(
                session.execute(
                    select(db.FavoriteModel.item_id).where(
                        db.FavoriteModel.user_pubkey == user_pubkey
                    )
                ).scalars()
            )
            stmt = (
                select(db.FeedItemModel)
                .where(db.FeedItemModel.feed_id.in_(list(titles)))
                .order_by(db.FeedItemModel.published_at.desc())
            )
            if unread_only and read_ids:
                stmt = stmt.where(db.FeedItemModel.id.not_in(read_ids))
            if favorites_only:
                stmt = stmt.where(db.FeedItemModel.id.in_(favorite_ids))
            items = session.execute(stmt.limit(limit)).scalars().all()

            return [
                ItemView(
                    id=item.id,
                    feed_id=item.feed_id,
                    feed_title=titles[item.feed_id],
                    title=item.title,
                    content=item.content,
                    published_at=db.as_utc(item.published_at),
                    author=item.author,
                    url=item.url,
                    media_refs=list(item.media_refs or []),
                    is_read=item.id in read_ids,
                    is_favorite=item.id in favorite_ids,
                )
                for item in items
            ]

    def list_favorites(self, user_pubkey: str, limit: int = FAVORITES_LIMIT) -> List[ItemView]:
        return self.list_items(user_pubkey, favorites_only=True, limit=limit)

    # -- sync --------------------------------------------------------------

    def apply_merge(
        self, user_pubkey: str, merge: MergeResult, *, confirm: bool = False
    ) -> Tuple[int, List[str]]:
        """Subscribe to every feed in ``merge.to_add`` once confirmed.

        Returns the number of new subscriptions and per-feed error messages.
        """
        if not confirm:
            logger.info(
                "Not applying %d remote subscriptions without confirmation",
                len(merge.to_add),
            )
            return 0, []

        added = 0
        errors: List[str] = []
        for feed in merge.to_add:
            try:
                if feed.type.is_nostr:
                    self.subscribe_nostr(
                        user_pubkey,
                        feed.url,
                        tags=feed.tags,
                        video=feed.type is FeedType.NOSTR_VIDEO,
                    )
                else:
                    self.subscribe_rss(
                        user_pubkey, feed.url, title=feed.title, tags=feed.tags, discover=False
                    )
                added += 1
            except AlreadySubscribedError:
                continue
            except Exception as exc:
                logger.warning("Could not subscribe to %s: %s", feed.url, exc)
                errors.append(f"{feed.url}: {exc}")
        logger.info("Applied %d of %d remote subscriptions", added, len(merge.to_add))
        return added, errors
