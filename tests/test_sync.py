import json

import pytest

from nostr_feedz import nostr, sync
from nostr_feedz.models import FeedType, SubscribedFeed, SubscriptionList

from conftest import NPUB, PRIVKEY_HEX, PUBKEY_HEX


class FakeRelays:
    def __init__(self, events=None, accept=1):
        self.events = events or []
        self.accept = accept
        self.published = []
        self.filters = []

    def publish(self, event):
        self.published.append(event)
        return self.accept

    def query(self, filter_):
        self.filters.append(filter_)
        return list(self.events)


def _rss(url, tags=None):
    return SubscribedFeed(FeedType.RSS, url, tags=list(tags or []))


def _nostr(author, tags=None):
    return SubscribedFeed(FeedType.NOSTR, author, tags=list(tags or []))


def test_normalize_url_and_author():
    assert sync.normalize_url("  HTTPS://Example.COM/Feed.xml ") == "https://example.com/Feed.xml"
    assert sync.normalize_url("not a url") == "not a url"
    assert sync.normalize_author(NPUB) == PUBKEY_HEX
    assert sync.normalize_author(f"nostr:{NPUB}") == PUBKEY_HEX
    assert sync.normalize_author(PUBKEY_HEX.upper()) == PUBKEY_HEX
    assert sync.normalize_author(" Some Name ") == "some name"


def test_merge_adds_only_missing_feeds():
    local = [_rss("https://example.com/feed"), _nostr(NPUB)]
    remote = SubscriptionList(
        rss=["HTTPS://EXAMPLE.com/feed", "https://other.example/rss"],
        nostr=[PUBKEY_HEX],
        tags={"https://other.example/rss": ["news"]},
    )

    result = sync.merge_subscription_lists(local, remote)

    assert [(feed.type, feed.url, feed.tags) for feed in result.to_add] == [
        (FeedType.RSS, "https://other.example/rss", ["news"])
    ]
    assert result.local_only == []


def test_merge_reports_local_only_without_removing():
    local = [_rss("https://mine.example/rss")]

    result = sync.merge_subscription_lists(local, SubscriptionList(nostr=[NPUB]))

    assert [feed.url for feed in result.to_add] == [NPUB]
    assert [feed.url for feed in result.local_only] == ["https://mine.example/rss"]


def test_merge_twice_is_idempotent():
    remote = SubscriptionList(rss=["https://a.example/rss"], nostr=[NPUB])
    local = [_rss("https://b.example/rss")]

    first = sync.merge_subscription_lists(local, remote)
    second = sync.merge_subscription_lists(local + first.to_add, remote)

    assert len(first.to_add) == 2
    assert second.to_add == []


def test_merge_dedupes_remote_entries():
    remote = SubscriptionList(rss=["https://a.example/rss", "https://A.example/rss"])

    assert len(sync.merge_subscription_lists([], remote).to_add) == 1


def test_build_subscription_list():
    feeds = [
        _rss("https://a.example/rss", ["tech"]),
        _rss("https://a.example/rss"),
        _nostr(NPUB),
        SubscribedFeed(FeedType.NOSTR_VIDEO, NPUB, tags=["video"]),
    ]

    lst = sync.build_subscription_list(feeds, now=1_700_000_000)

    assert lst.rss == ["https://a.example/rss"]
    assert lst.nostr == [NPUB]
    assert lst.tags == {"https://a.example/rss": ["tech"]}
    assert lst.to_payload()["lastUpdated"] == 1_700_000_000


def test_publish_then_fetch_round_trip():
    signer = nostr.Signer.local(PRIVKEY_HEX)
    relays = FakeRelays()
    lst = SubscriptionList(rss=["https://a.example/rss"], nostr=[NPUB], tags={}, last_updated=5)

    published = sync.publish_subscription_list(lst, signer, relays)

    assert published.success
    assert published.accepted == 1
    event = relays.published[0]
    assert event["kind"] == sync.SUBSCRIPTION_LIST_KIND
    assert ["d", sync.SUBSCRIPTION_LIST_D_TAG] in event["tags"]
    assert ["client", sync.CLIENT_TAG] in event["tags"]
    assert json.loads(event["content"])["lastUpdated"] == 5

    author = signer.get_public_key()
    fetched = sync.fetch_subscription_list(nostr.encode_npub(author), FakeRelays([event]))
    assert fetched == lst


def test_publish_reports_no_accepting_relay():
    result = sync.publish_subscription_list(
        SubscriptionList(), nostr.Signer.local(PRIVKEY_HEX), FakeRelays(accept=0)
    )

    assert not result.success
    assert result.event_id
    assert result.error == "No relay accepted the subscription list"


def test_publish_reports_signing_failure():
    class BrokenSigner:
        def get_public_key(self):
            return PUBKEY_HEX

        def sign_event(self, event):
            raise RuntimeError("signer unavailable")

    relays = FakeRelays()

    result = sync.publish_subscription_list(
        SubscriptionList(), nostr.Signer.delegated(BrokenSigner()), relays
    )

    assert not result.success
    assert result.error == "signer unavailable"
    assert relays.published == []


def test_fetch_ignores_forged_and_foreign_events():
    author = nostr.public_key_from_private(PRIVKEY_HEX)
    genuine = nostr.sign_event(
        sync.build_subscription_event(SubscriptionList(rss=["https://real.example"]), author),
        PRIVKEY_HEX,
    )
    forged = dict(genuine, content=json.dumps({"rss": ["https://evil.example"]}))
    relays = FakeRelays([forged, genuine])

    fetched = sync.fetch_subscription_list(author, relays)

    assert fetched.rss == ["https://real.example"]
    assert relays.filters[0] == {
        "kinds": [sync.SUBSCRIPTION_LIST_KIND],
        "authors": [author],
        "#d": [sync.SUBSCRIPTION_LIST_D_TAG],
    }


def test_fetch_handles_missing_and_malformed_lists():
    author = nostr.public_key_from_private(PRIVKEY_HEX)
    malformed = nostr.sign_event(
        dict(sync.build_subscription_event(SubscriptionList(), author), content="[1, 2]"),
        PRIVKEY_HEX,
    )

    assert sync.fetch_subscription_list(author, FakeRelays()) is None
    assert sync.fetch_subscription_list(author, FakeRelays([malformed])) is None
    with pytest.raises(ValueError):
        sync.fetch_subscription_list("nobody", FakeRelays())
