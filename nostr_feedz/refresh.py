"""Server-side batch refresh of subscribed feeds."""

from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from . import db
from .feeds import fetch_and_parse_feed
from .models import FeedType, ParsedFeed, ParsedItem, RefreshResult
from .nostr_fetcher import NostrFeedFetcher
from .retry import RetryOptions, with_retry

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(minutes=5)
DEFAULT_CONCURRENCY = 5
NOSTR_FETCH_LIMIT = 50


@dataclass(frozen=True)
class FeedRef:
    """Detached snapshot of the feed columns a worker needs."""

    id: str
    type: FeedType
    title: str
    url: Optional[str]
    author_key: Optional[str]

    @classmethod
    def from_model(cls, feed: db.FeedModel) -> "FeedRef":
        return cls(
            id=feed.id,
            type=feed.feed_type,
            title=feed.title,
            url=feed.url,
            author_key=feed.author_key,
        )


@dataclass
class FeedOutcome:
    feed: FeedRef
    skipped: bool = False
    new_items: int = 0
    error: Optional[str] = None


class FeedRefresher:
    """Fetch every subscribed feed in bounded concurrent chunks."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        nostr_fetcher: Optional[NostrFeedFetcher] = None,
        rss_fetcher: Callable[[str], ParsedFeed] = fetch_and_parse_feed,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        concurrency: int = DEFAULT_CONCURRENCY,
        retry: Optional[RetryOptions] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.session_factory = session_factory
        self.nostr_fetcher = nostr_fetcher
        self.rss_fetcher = rss_fetcher
        self.cooldown = cooldown
        self.concurrency = concurrency
        self.retry = retry or RetryOptions()
        self._sleep = sleep
        self._clock = clock

    def _fetch_items(
        self, feed: FeedRef, since: Optional[datetime]
    ) -> Tuple[List[ParsedItem], Optional[str]]:
        """Return the candidate items and, for RSS, the current feed title."""
        if feed.type is FeedType.RSS:
            if not feed.url:
                raise ValueError("RSS feed has no URL")
            parsed = with_retry(
                lambda: self.rss_fetcher(feed.url), self.retry, sleep=self._sleep
            )
            return parsed.items, parsed.title

        if self.nostr_fetcher is None:
            raise RuntimeError("No relay client configured for Nostr feeds")
        if not feed.author_key:
            raise ValueError("Nostr feed has no author key")

        if feed.type is FeedType.NOSTR_VIDEO:
            fetch = self.nostr_fetcher.fetch_video_events
        else:
            fetch = self.nostr_fetcher.fetch_long_form_posts
        posts = with_retry(
            lambda: fetch(feed.author_key, NOSTR_FETCH_LIMIT, since),
            self.retry,
            sleep=self._sleep,
        )
        return [post.to_parsed_item() for post in posts], None

    def _refresh_one(self, feed: FeedRef, force: bool) -> FeedOutcome:
        with self.session_factory() as session:
            claimed, previous = db.claim_feed(
                session, feed.id, self._clock(), self.cooldown, force
            )
            if not claimed:
                logger.debug("Skipping feed %s (%s): cooldown", feed.id, feed.title)
                return FeedOutcome(feed=feed, skipped=True)

            try:
                items, title = self._fetch_items(feed, previous)
            except Exception as exc:
                db.release_claim(session, feed.id, previous)
                logger.warning("Failed to refresh feed '%s': %s", feed.title, exc)
                return FeedOutcome(feed=feed, error=f"{feed.title}: {exc}")

            db.mark_fetched(session, feed.id, self._clock(), title=title)
            inserted = db.insert_items_skip_duplicates(session, feed.id, items)
            logger.info(
                "Refreshed feed '%s': %d new of %d items",
                feed.title,
                inserted,
                len(items),
            )
            return FeedOutcome(feed=feed, new_items=inserted)

    def _run(self, feeds: List[FeedRef], force: bool) -> RefreshResult:
        result = RefreshResult(total=len(feeds))

        for start in range(0, len(feeds), self.concurrency):
            chunk = feeds[start : start + self.concurrency]
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=len(chunk)
            ) as executor:
                future_to_feed = {
                    executor.submit(self._refresh_one, feed, force): feed
                    for feed in chunk
                }
                for future in concurrent.futures.as_completed(future_to_feed):
                    feed = future_to_feed[future]
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.exception("Unexpected error refreshing '%s'", feed.title)
                        result.errors.append(f"{feed.title}: {exc}")
                        continue
                    if outcome.error:
                        result.errors.append(outcome.error)
                        continue
                    result.refreshed += 1
                    result.new_items += outcome.new_items
                    if outcome.skipped:
                        result.skipped += 1

        logger.info(
            "Refresh complete: %d/%d feeds refreshed (%d skipped), %d new items, %d errors",
            result.refreshed,
            result.total,
            result.skipped,
            result.new_items,
            len(result.errors),
        )
        return result

    def refresh_all(
        self, user_pubkey: Optional[str] = None, force: bool = False
    ) -> RefreshResult:
        """Refresh feeds subscribed by ``user_pubkey`` (or by anyone)."""
        with self.session_factory() as session:
            feeds = [
                FeedRef.from_model(feed)
                for feed in db.list_feeds_for_refresh(session, user_pubkey)
            ]
        logger.info("Refreshing %d feeds", len(feeds))
        return self._run(feeds, force)

    def refresh_feed(self, feed_id: str, force: bool = True) -> RefreshResult:
        with self.session_factory() as session:
            feed = db.get_feed(session, feed_id)
            if feed is None:
                raise ValueError(f"Feed not found: {feed_id}")
            ref = FeedRef.from_model(feed)
        return self._run([ref], force)
