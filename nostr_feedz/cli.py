"""Command-line interface for nostr_feedz."""

from __future__ import annotations

import argparse
import logging
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from . import db, nostr
from .client_store import ClientSettings, FeedCache, StateStore
from .config import AppConfig, parse_app_config, parse_env_config
from .feeds import discover_feed
from .nostr_fetcher import NostrFeedFetcher
from .opml import export_opml, load_opml
from .refresh import FeedRefresher
from .relays import RelayPool
from .scheduler import PollingScheduler
from .subscriptions import AlreadySubscribedError, SubscriptionService
from .sync import (
    build_subscription_list,
    fetch_subscription_list,
    merge_subscription_lists,
    publish_subscription_list,
)

logger = logging.getLogger(__name__)

NSEC_ENV = "NOSTR_NSEC"
AUTH_TOKEN_ENV = "FEEDZ_AUTH_TOKEN"


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Aggregate RSS feeds and Nostr long-form content."
    )
    parser.add_argument(
        "--config",
        default="configs/config.xml",
        help="Path to the main configuration XML file.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (e.g. DEBUG, INFO, WARNING). Overrides config.",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Optional path to a log file. Overrides config.",
    )
    parser.add_argument(
        "--user",
        default=None,
        help="npub or hex key of the user to act for. Overrides config.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    refresh = commands.add_parser("refresh", help="Fetch every subscribed feed.")
    refresh.add_argument("--force", action="store_true", help="Ignore the cooldown.")
    refresh.add_argument("--all-users", action="store_true", help="Refresh feeds of every user.")
    refresh.add_argument("--feed", metavar="ID", help="Refresh a single feed.")

    poll = commands.add_parser("poll", help="Run the polling client.")
    poll.add_argument("--once", action="store_true", help="Refresh once and exit.")
    poll.add_argument("--force", action="store_true", help="Bypass the manual cooldown.")

    subscribe = commands.add_parser("subscribe", help="Subscribe to a feed URL or npub.")
    subscribe.add_argument("target")
    subscribe.add_argument("--tag", action="append", default=[], dest="tags")
    subscribe.add_argument("--video", action="store_true", help="Follow an author's videos.")

    commands.add_parser("sync-publish", help="Publish subscriptions to relays.")

    pull = commands.add_parser("sync-pull", help="Merge subscriptions from relays.")
    pull.add_argument("--yes", action="store_true", help="Subscribe to missing feeds.")

    import_cmd = commands.add_parser("import-opml", help="Subscribe to feeds in OPML.")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--tag", action="append", default=[], dest="tags")

    export_cmd = commands.add_parser("export-opml", help="Write RSS subscriptions as OPML.")
    export_cmd.add_argument("--output", metavar="PATH")

    discover = commands.add_parser("discover", help="Find the feed behind a web page.")
    discover.add_argument("url")

    return parser


def configure_logging(level_name: str, log_file: Optional[str] = None) -> None:
    """Initialise logging according to options."""
    log_level = getattr(logging, level_name.upper(), None)
    if not isinstance(log_level, int):
        raise ValueError(f"Unsupported log level: {level_name}")

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def _private_key() -> Optional[str]:
    nsec = os.environ.get(NSEC_ENV)
    if not nsec:
        return None
    private_key = nostr.decode_nsec(nsec.strip())
    if private_key is None:
        raise ValueError(f"{NSEC_ENV} is not a valid nsec")
    return private_key


def _resolve_user(args: argparse.Namespace, config: AppConfig) -> str:
    candidate = args.user or config.user_pubkey
    if candidate:
        pubkey = nostr.normalize_public_key(candidate)
        if pubkey is None:
            raise ValueError(f"Invalid user key: {candidate}")
        return pubkey
    private_key = _private_key()
    if private_key:
        return nostr.public_key_from_private(private_key)
    raise ValueError(f"No user given; pass --user or set {NSEC_ENV}")


class _Services:
    def __init__(self, config: AppConfig):
        engine = db.init_engine(config.database.connection_string)
        self.session_factory = db.get_session_factory(engine)
        self.retry = config.retry.to_options()
        self.relays = RelayPool(
            config.relays.urls, timeout=config.relays.timeout, retry=self.retry
        )
        self.fetcher = NostrFeedFetcher(self.relays)
        self.subscriptions = SubscriptionService(
            self.session_factory, nostr_fetcher=self.fetcher, retry=self.retry
        )


def _cmd_refresh(args, config: AppConfig) -> int:
    services = _Services(config)
    refresher = FeedRefresher(
        services.session_factory,
        nostr_fetcher=services.fetcher,
        cooldown=timedelta(minutes=config.refresh.cooldown_minutes),
        concurrency=config.refresh.concurrency,
        retry=services.retry,
    )
    if args.feed:
        result = refresher.refresh_feed(args.feed, force=True)
    else:
        user = None if args.all_users else _resolve_user(args, config)
        result = refresher.refresh_all(user_pubkey=user, force=args.force)

    print(
        f"Refreshed {result.refreshed}/{result.total} feeds "
        f"({result.skipped} skipped), {result.new_items} new items"
    )
    for error in result.errors:
        print(f"  error: {error}")
    return 0


def _cmd_poll(args, config: AppConfig) -> int:
    state_file = config.client.state_file or str(Path.home() / ".nostr-feedz" / "state.json")
    store = StateStore(state_file)
    state = store.load()
    state.settings = ClientSettings(
        web_app_url=config.client.web_app_url,
        poll_interval_minutes=config.client.poll_interval_minutes,
        notifications_enabled=config.client.notifications_enabled,
        notify_on_new_items=config.client.notify_on_new_items,
        max_notifications_per_refresh=config.client.max_notifications_per_refresh,
    )
    store.save(state)

    scheduler = PollingScheduler(
        store, FeedCache(config.client.cache_connection_string), retry=config.retry.to_options()
    )
    token = os.environ.get(AUTH_TOKEN_ENV)
    nsec = os.environ.get(NSEC_ENV)
    if token:
        scheduler.set_auth_token(token)
    elif nsec and not scheduler.state.has_auth:
        scheduler.login_with_nsec(nsec)

    if args.once:
        outcome = scheduler.manual_refresh(force=args.force)
        if outcome.note:
            print(outcome.note)
        if outcome.error:
            print(f"Refresh failed: {outcome.error}")
            return 1
        print(f"{outcome.new_item_count} new items, {scheduler.unread_count()} unread")
        return 0

    scheduler.setup_timer()
    scheduler.manual_refresh(force=True)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Stopping poller")
    finally:
        scheduler.stop_timer()
    return 0


def _cmd_subscribe(args, config: AppConfig) -> int:
    services = _Services(config)
    user = _resolve_user(args, config)
    target = args.target.strip()
    if target.startswith("npub1") or nostr.is_valid_hex_key(target):
        feed = services.subscriptions.subscribe_nostr(
            user, target, tags=args.tags, video=args.video
        )
    else:
        feed = services.subscriptions.subscribe_rss(user, target, tags=args.tags)
    print(f"Subscribed to {feed.title} ({feed.id})")
    return 0


def _cmd_sync_publish(args, config: AppConfig) -> int:
    private_key = _private_key()
    signer = nostr.resolve_signer(private_key)
    services = _Services(config)
    user = nostr.normalize_public_key(signer.get_public_key())
    feeds = services.subscriptions.list_subscribed_feeds(user)
    result = publish_subscription_list(
        build_subscription_list(feeds), signer, services.relays
    )
    if not result.success:
        raise RuntimeError(f"Publishing failed: {result.error}")
    print(f"Published {result.event_id} to {result.accepted} relays")
    return 0


def _cmd_sync_pull(args, config: AppConfig) -> int:
    services = _Services(config)
    user = _resolve_user(args, config)
    remote = fetch_subscription_list(user, services.relays)
    if remote is None:
        print("No subscription list found on relays")
        return 0

    local = services.subscriptions.list_subscribed_feeds(user)
    merge = merge_subscription_lists(local, remote)
    for feed in merge.to_add:
        print(f"+ {feed.type.value} {feed.url}")
    for feed in merge.local_only:
        print(f"= {feed.type.value} {feed.url} (local only)")
    if not merge.to_add:
        print("Already up to date")
        return 0

    added, errors = services.subscriptions.apply_merge(user, merge, confirm=args.yes)
    if not args.yes:
        print("Re-run with --yes to subscribe to the missing feeds")
        return 0
    print(f"Added {added} subscriptions")
    for error in errors:
        print(f"  error: {error}")
    return 0


def _cmd_import_opml(args, config: AppConfig) -> int:
    services = _Services(config)
    user = _resolve_user(args, config)
    imported = 0
    for feed in load_opml(args.path):
        try:
            services.subscriptions.subscribe_rss(
                user,
                feed.url,
                title=feed.title,
                tags=list(dict.fromkeys(feed.tags + args.tags)),
                discover=False,
            )
            imported += 1
        except AlreadySubscribedError:
            logger.info("Already subscribed to %s", feed.url)
    print(f"Imported {imported} feeds")
    return 0


def _cmd_export_opml(args, config: AppConfig) -> int:
    services = _Services(config)
    user = _resolve_user(args, config)
    document = export_opml(services.subscriptions.list_subscribed_feeds(user))
    if args.output:
        Path(args.output).write_text(document, encoding="utf-8")
        print(f"Wrote {args.output}")
    else:
        print(document)
    return 0


def _cmd_discover(args, config: AppConfig) -> int:
    result = discover_feed(args.url)
    if not result.found:
        raise RuntimeError(result.error or "No feed found")
    print(f"{result.feed_url} ({result.type}) {result.title or ''}".rstrip())
    return 0


COMMANDS = {
    "refresh": _cmd_refresh,
    "poll": _cmd_poll,
    "subscribe": _cmd_subscribe,
    "sync-publish": _cmd_sync_publish,
    "sync-pull": _cmd_sync_pull,
    "import-opml": _cmd_import_opml,
    "export-opml": _cmd_export_opml,
    "discover": _cmd_discover,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = parse_app_config(args.config)

        if app_config.env_file:
            os.environ.update(parse_env_config(app_config.env_file))

        log_level = args.log_level or app_config.logging.level
        log_file = args.log_file or app_config.logging.file
        configure_logging(log_level, log_file)

        return COMMANDS[args.command](args, app_config)
    except ValueError as exc:
        parser.error(str(exc))
    except (RuntimeError, FileNotFoundError) as exc:
        logger.error("%s", exc)
        return 1
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected error during execution.")
        return 1
