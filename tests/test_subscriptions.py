from datetime import datetime, timedelta, timezone

import pytest

from nostr_feedz import db
from nostr_feedz.feeds import DiscoveryResult, FeedFetchError
from nostr_feedz.models import (
    FeedType,
    MergeResult,
    NostrPost,
    ParsedFeed,
    ParsedItem,
    Profile,
    SubscribedFeed,
)
from nostr_feedz.retry import RetryOptions
from nostr_feedz.subscriptions import AlreadySubscribedError, SubscriptionService

from conftest import NPUB, PUBKEY_HEX

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FEED_URL = "https://example.com/rss.xml"


def _items(*guids):
    return [
        ParsedItem(
            title=guid,
            content="",
            published_at=NOW - timedelta(hours=index),
            guid=guid,
        )
        for index, guid in enumerate(guids)
    ]


class StubNostr:
    def __init__(self, name="Alice", posts=("p1", "p2")):
        self.name = name
        self.posts = posts
        self.profile_calls = 0

    def get_profile(self, npub):
        self.profile_calls += 1
        return Profile(name=self.name) if self.name else None

    def _posts(self):
        return [
            NostrPost(id=post, title=post, content="", author=NPUB, published_at=NOW, kind=30023)
            for post in self.posts
        ]

    def fetch_long_form_posts(self, npub, limit=50, since=None):
        return self._posts()

    def fetch_video_events(self, npub, limit=50, since=None):
        return []


@pytest.fixture
def service(session_factory):
    feeds = {FEED_URL: ParsedFeed(title="Example Feed", items=_items("a", "b", "c"))}

    def rss_fetcher(url):
        if url not in feeds:
            raise FeedFetchError("not found")
        return feeds[url]

    def discoverer(url):
        if "nothing" in url:
            return DiscoveryResult(found=False, error="No RSS or Atom feed found at this URL or domain")
        return DiscoveryResult(found=True, feed_url=FEED_URL, type="rss")

    return SubscriptionService(
        session_factory,
        nostr_fetcher=StubNostr(),
        rss_fetcher=rss_fetcher,
        discoverer=discoverer,
        retry=RetryOptions(max_attempts=1),
    )


def test_subscribe_rss_discovers_and_fetches(service):
    summary = service.subscribe_rss("alice", "https://example.com/", tags=["tech"])

    assert summary.title == "Example Feed"
    assert summary.url == FEED_URL
    feeds = service.list_feeds("alice")
    assert [(feed.id, feed.unread_count, feed.tags) for feed in feeds] == [
        (summary.id, 3, ["tech"])
    ]


def test_subscribe_rss_twice_raises(service):
    service.subscribe_rss("alice", FEED_URL)

    with pytest.raises(AlreadySubscribedError, match="Already subscribed to this feed"):
        service.subscribe_rss("alice", FEED_URL)


def test_second_user_shares_the_feed(service, session_factory):
    first = service.subscribe_rss("alice", FEED_URL)
    second = service.subscribe_rss("bob", FEED_URL)

    assert first.id == second.id
    with session_factory() as session:
        assert db.count_items(session, first.id) == 3


def test_subscribe_rss_without_feed_found(service):
    with pytest.raises(ValueError, match="No RSS or Atom feed"):
        service.subscribe_rss("alice", "https://nothing.example/")


def test_subscribe_rss_title_falls_back_to_hostname(service):
    summary = service.subscribe_rss("alice", "https://down.example/feed", discover=False)

    assert summary.title == "down.example"
    assert service.list_feeds("alice")[0].unread_count == 0


def test_subscribe_nostr_uses_profile_name(service):
    summary = service.subscribe_nostr("alice", PUBKEY_HEX, tags=["nostr"])

    assert summary.type is FeedType.NOSTR
    assert summary.author_key == NPUB
    assert summary.title == "Alice"
    assert service.list_feeds("alice")[0].unread_count == 2


def test_subscribe_nostr_without_profile_uses_short_npub(session_factory):
    service = SubscriptionService(session_factory, nostr_fetcher=StubNostr(name=None))

    summary = service.subscribe_nostr("alice", NPUB)

    assert summary.title == NPUB[:16] + "..."


def test_subscribe_nostr_fixes_placeholder_title(session_factory):
    SubscriptionService(session_factory, nostr_fetcher=StubNostr(name=None)).subscribe_nostr(
        "alice", NPUB
    )

    summary = SubscriptionService(
        session_factory, nostr_fetcher=StubNostr(name="Named")
    ).subscribe_nostr("bob", NPUB)

    assert summary.title == "Named"


def test_subscribe_nostr_rejects_invalid_key(service):
    with pytest.raises(ValueError):
        service.subscribe_nostr("alice", "npub1nope")


def test_unsubscribe_removes_orphaned_feed(service, session_factory):
    summary = service.subscribe_rss("alice", FEED_URL)
    service.subscribe_rss("bob", FEED_URL)

    assert service.unsubscribe("alice", summary.id)
    with session_factory() as session:
        assert db.get_feed(session, summary.id) is not None

    assert service.unsubscribe("bob", summary.id)
    with session_factory() as session:
        assert db.get_feed(session, summary.id) is None
    assert not service.unsubscribe("bob", summary.id)


def test_read_state_and_unread_counts(service):
    feed = service.subscribe_rss("alice", FEED_URL)
    items = service.list_items("alice")
    assert [item.title for item in items] == ["a", "b", "c"]

    service.mark_read("alice", items[0].id)
    assert service.list_feeds("alice")[0].unread_count == 2
    assert [item.title for item in service.list_items("alice", unread_only=True)] == ["b", "c"]

    service.mark_unread("alice", items[0].id)
    assert service.mark_feed_read("alice", feed.id) == 3
    assert service.list_feeds("alice")[0].unread_count == 0


def test_mark_all_read_is_per_user(service):
    service.subscribe_rss("alice", FEED_URL)
    service.subscribe_rss("bob", FEED_URL)

    assert service.mark_all_read("alice") == 3

    assert service.list_feeds("alice")[0].unread_count == 0
    assert service.list_feeds("bob")[0].unread_count == 3


def test_tags_filter_and_summary(service):
    rss = service.subscribe_rss("alice", FEED_URL, tags=["tech", "daily"])
    service.subscribe_nostr("alice", NPUB, tags=["tech"])

    summary = service.tag_summary("alice")
    assert summary["tech"].feed_count == 2
    assert summary["tech"].unread_count == 5
    assert summary["daily"].feed_count == 1

    assert {item.feed_id for item in service.list_items("alice", tag="daily")} == {rss.id}

    service.update_tags("alice", rss.id, [" news ", "news", ""])
    tags = {feed.id: feed.tags for feed in service.list_feeds("alice")}
    assert tags[rss.id] == ["news"]


def test_favorites(service):
    service.subscribe_rss("alice", FEED_URL)
    item = service.list_items("alice")[1]

    assert service.add_favorite("alice", item.id)
    assert not service.add_favorite("alice", item.id)
    favorites = service.list_favorites("alice")
    assert [fav.id for fav in favorites] == [item.id]
    assert favorites[0].is_favorite

    service.remove_favorite("alice", item.id)
    assert service.list_favorites("alice") == []


def test_apply_merge_requires_confirmation(service):
    merge = MergeResult(
        to_add=[
            SubscribedFeed(FeedType.RSS, FEED_URL, tags=["remote"]),
            SubscribedFeed(FeedType.NOSTR, NPUB),
            SubscribedFeed(FeedType.NOSTR, "npub1broken"),
        ]
    )

    assert service.apply_merge("alice", merge) == (0, [])
    assert service.list_feeds("alice") == []

    added, errors = service.apply_merge("alice", merge, confirm=True)
    assert added == 2
    assert len(errors) == 1 and errors[0].startswith("npub1broken: ")
    feeds = {feed.type: feed for feed in service.list_feeds("alice")}
    assert feeds[FeedType.RSS].tags == ["remote"]

    assert service.apply_merge("alice", merge, confirm=True)[0] == 0
