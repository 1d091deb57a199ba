"""Publish, fetch and merge subscription lists stored as replaceable events."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

from . import nostr
from .models import FeedType, MergeResult, SubscribedFeed, SubscriptionList
from .relays import RelayPool

logger = logging.getLogger(__name__)

SUBSCRIPTION_LIST_KIND = 30404
SUBSCRIPTION_LIST_D_TAG = "nostr-feedz-subscriptions"
CLIENT_TAG = "nostr-feedz"

_NPUB_RE = re.compile(r"npub1[a-zA-Z0-9]+")


@dataclass
class PublishResult:
    success: bool
    event_id: Optional[str] = None
    accepted: int = 0
    error: Optional[str] = None


def normalize_url(url: str) -> str:
    """Comparison form of a feed URL: trimmed, scheme and host lower-cased."""
    candidate = url.strip()
    parts = urlsplit(candidate)
    if not parts.scheme or not parts.netloc:
        return candidate
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, parts.fragment)
    )


def normalize_author(value: str) -> str:
    """Comparison form of an author reference (npub, hex or free text)."""
    candidate = value.strip()
    match = _NPUB_RE.search(candidate)
    if match:
        decoded = nostr.decode_npub(match.group(0))
        if decoded:
            return decoded
    decoded = nostr.normalize_public_key(candidate)
    return decoded or candidate.lower()


def _feed_key(feed: SubscribedFeed) -> Tuple[str, str]:
    if feed.type.is_nostr:
        return ("nostr", normalize_author(feed.url))
    return ("rss", normalize_url(feed.url))


def build_subscription_list(
    feeds: Iterable[SubscribedFeed], *, now: Optional[int] = None
) -> SubscriptionList:
    """Snapshot local subscriptions as a portable list."""
    result = SubscriptionList(last_updated=int(now if now is not None else time.time()))
    for feed in feeds:
        target = result.nostr if feed.type.is_nostr else result.rss
        if feed.url in target:
            continue
        target.append(feed.url)
        if feed.tags:
            result.tags[feed.url] = list(feed.tags)
    return result


def build_subscription_event(lst: SubscriptionList, pubkey: str) -> dict:
    payload = lst.to_payload()
    if "lastUpdated" not in payload:
        payload["lastUpdated"] = int(time.time())
    return {
        "pubkey": pubkey,
        "created_at": int(time.time()),
        "kind": SUBSCRIPTION_LIST_KIND,
        "tags": [["d", SUBSCRIPTION_LIST_D_TAG], ["client", CLIENT_TAG]],
        "content": json.dumps(payload),
    }


def publish_subscription_list(
    lst: SubscriptionList, signer: nostr.Signer, relays: RelayPool
) -> PublishResult:
    """Sign and publish ``lst``; failures are reported, never retried."""
    try:
        event = signer.sign(build_subscription_event(lst, signer.get_public_key()))
    except Exception as exc:
        logger.warning("Could not sign subscription list: %s", exc)
        return PublishResult(success=False, error=str(exc))

    accepted = relays.publish(event)
    if accepted == 0:
        return PublishResult(
            success=False,
            event_id=event["id"],
            error="No relay accepted the subscription list",
        )
    logger.info(
        "Published subscription list %s (%d rss, %d nostr)",
        event["id"],
        len(lst.rss),
        len(lst.nostr),
    )
    return PublishResult(success=True, event_id=event["id"], accepted=accepted)


def fetch_subscription_list(
    identity: str, relays: RelayPool
) -> Optional[SubscriptionList]:
    """Return the newest verified list published by ``identity``, if any."""
    pubkey = nostr.normalize_public_key(identity)
    if pubkey is None:
        raise ValueError(f"Invalid public key: {identity!r}")

    events = relays.query(
        {
            "kinds": [SUBSCRIPTION_LIST_KIND],
            "authors": [pubkey],
            "#d": [SUBSCRIPTION_LIST_D_TAG],
        }
    )
    for event in events:
        if event.get("pubkey") != pubkey or not nostr.verify_event(event):
            logger.warning("Ignoring unverifiable subscription event %s", event.get("id"))
            continue
        if nostr.tag_value(event, "d") != SUBSCRIPTION_LIST_D_TAG:
            continue
        try:
            return SubscriptionList.from_payload(json.loads(event.get("content", "")))
        except ValueError as exc:
            logger.warning("Subscription list %s is malformed: %s", event.get("id"), exc)
            return None
    return None


def _remote_feeds(remote: SubscriptionList) -> List[SubscribedFeed]:
    feeds = [
        SubscribedFeed(type=FeedType.RSS, url=url, tags=list(remote.tags.get(url, [])))
        for url in remote.rss
    ]
    feeds.extend(
        SubscribedFeed(
            type=FeedType.NOSTR, url=npub, tags=list(remote.tags.get(npub, []))
        )
        for npub in remote.nostr
    )
    return feeds


def merge_subscription_lists(
    local: Iterable[SubscribedFeed], remote: SubscriptionList
) -> MergeResult:
    """Work out which remote feeds are missing locally.

    The merge is additive: ``local_only`` is informational and nothing is
    removed. Remote tags travel with each entry in ``to_add``.
    """
    local_feeds = list(local)
    local_keys: Set[Tuple[str, str]] = {_feed_key(feed) for feed in local_feeds}

    result = MergeResult()
    remote_keys: Set[Tuple[str, str]] = set()
    for feed in _remote_feeds(remote):
        key = _feed_key(feed)
        if key in remote_keys:
            continue
        remote_keys.add(key)
        if key not in local_keys:
            result.to_add.append(feed)

    result.local_only = [
        feed for feed in local_feeds if _feed_key(feed) not in remote_keys
    ]
    return result
