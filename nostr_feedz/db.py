"""Database layer for feeds, items, subscriptions and per-user item state."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import FeedType, ParsedItem

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class FeedModel(Base):
    """A subscribable source shared by every subscriber."""

    __tablename__ = "feeds"
    __table_args__ = (
        UniqueConstraint("type", "url", name="uq_feed_type_url"),
        UniqueConstraint("type", "author_key", name="uq_feed_type_author"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    type = Column(String, nullable=False)
    url = Column(String, nullable=True)
    author_key = Column(String, nullable=True)
    title = Column(String, nullable=False, default="Untitled Feed")
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    @property
    def feed_type(self) -> FeedType:
        return FeedType(self.type)


class FeedItemModel(Base):
    __tablename__ = "feed_items"
    __table_args__ = (UniqueConstraint("feed_id", "guid", name="uq_item_feed_guid"),)

    id = Column(String, primary_key=True, default=_new_id)
    feed_id = Column(String, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    author = Column(String, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=False)
    url = Column(String, nullable=True)
    guid = Column(String, nullable=False)
    media_refs = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class SubscriptionModel(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint("user_pubkey", "feed_id", name="uq_subscription_user_feed"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_pubkey = Column(String, nullable=False, index=True)
    feed_id = Column(String, ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    category_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ReadItemModel(Base):
    __tablename__ = "read_items"

    user_pubkey = Column(String, primary_key=True)
    item_id = Column(String, ForeignKey("feed_items.id", ondelete="CASCADE"), primary_key=True)
    read_at = Column(DateTime(timezone=True), default=_utcnow)


class FavoriteModel(Base):
    __tablename__ = "favorites"

    user_pubkey = Column(String, primary_key=True)
    item_id = Column(String, ForeignKey("feed_items.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


def make_engine(connection_string: str) -> Engine:
    kwargs = {}
    if connection_string in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection so every thread sees the same in-memory data.
        kwargs = {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return create_engine(connection_string, **kwargs)


def init_engine(connection_string: Optional[str]) -> Optional[Engine]:
    """Initialize the database engine and create missing tables."""
    if not connection_string:
        return None

    logger.info("Initializing database connection: %s", connection_string)
    engine = make_engine(connection_string)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def _commit(session: Session) -> None:
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


def get_feed(session: Session, feed_id: str) -> Optional[FeedModel]:
    return session.get(FeedModel, feed_id)


def find_feed(
    session: Session,
    feed_type: FeedType,
    *,
    url: Optional[str] = None,
    author_key: Optional[str] = None,
) -> Optional[FeedModel]:
    """Look a feed up by its natural key."""
    stmt = select(FeedModel).where(FeedModel.type == feed_type.value)
    if feed_type.is_nostr:
        stmt = stmt.where(FeedModel.author_key == author_key)
    else:
        stmt = stmt.where(FeedModel.url == url)
    return session.execute(stmt).scalar_one_or_none()


def create_feed(
    session: Session,
    feed_type: FeedType,
    title: str,
    *,
    url: Optional[str] = None,
    author_key: Optional[str] = None,
) -> FeedModel:
    feed = FeedModel(
        type=feed_type.value,
        title=title,
        url=None if feed_type.is_nostr else url,
        author_key=author_key if feed_type.is_nostr else None,
    )
    session.add(feed)
    _commit(session)
    logger.info("Created %s feed %s (%s)", feed_type.value, feed.id, title)
    return feed


def list_feeds_for_refresh(
    session: Session, user_pubkey: Optional[str] = None
) -> List[FeedModel]:
    """Distinct feeds with at least one subscription, optionally per user."""
    subscribed = select(SubscriptionModel.feed_id)
    if user_pubkey:
        subscribed = subscribed.where(SubscriptionModel.user_pubkey == user_pubkey)
    stmt = (
        select(FeedModel)
        .where(FeedModel.id.in_(subscribed))
        .order_by(FeedModel.created_at, FeedModel.id)
    )
    return list(session.execute(stmt).scalars().all())


def claim_feed(
    session: Session,
    feed_id: str,
    now: datetime,
    cooldown: timedelta,
    force: bool = False,
) -> Tuple[bool, Optional[datetime]]:
    """Atomically take the right to fetch ``feed_id``.

    Returns ``(claimed, previous_last_fetched_at)``. Without ``force`` the
    claim only succeeds when the feed is outside the cooldown window and no
    concurrent run has claimed it since it was read.
    """
    row = session.execute(
        select(FeedModel.last_fetched_at).where(FeedModel.id == feed_id)
    ).first()
    if row is None:
        return False, None
    stored = row[0]
    previous = as_utc(stored)

    stmt = update(FeedModel).where(FeedModel.id == feed_id)
    if not force:
        if previous is not None and now - previous < cooldown:
            return False, previous
        if stored is None:
            stmt = stmt.where(FeedModel.last_fetched_at.is_(None))
        else:
            stmt = stmt.where(FeedModel.last_fetched_at == stored)

    result = session.execute(
        stmt.values(last_fetched_at=now).execution_options(synchronize_session=False)
    )
    _commit(session)
    return result.rowcount == 1, previous


def mark_fetched(
    session: Session, feed_id: str, when: datetime, title: Optional[str] = None
) -> None:
    values = {"last_fetched_at": when}
    if title:
        values["title"] = title
    session.execute(
        update(FeedModel)
        .where(FeedModel.id == feed_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    _commit(session)


def release_claim(
    session: Session, feed_id: str, previous: Optional[datetime]
) -> None:
    """Restore ``last_fetched_at`` after a failed fetch so it is retried."""
    session.execute(
        update(FeedModel)
        .where(FeedModel.id == feed_id)
        .values(last_fetched_at=previous)
        .execution_options(synchronize_session=False)
    )
    _commit(session)


def delete_feed_if_orphaned(session: Session, feed_id: str) -> bool:
    remaining = session.execute(
        select(func.count())
        .select_from(SubscriptionModel)
        .where(SubscriptionModel.feed_id == feed_id)
    ).scalar_one()
    if remaining:
        return False
    session.execute(delete(FeedItemModel).where(FeedItemModel.feed_id == feed_id))
    session.execute(delete(FeedModel).where(FeedModel.id == feed_id))
    _commit(session)
    return True


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


def _item_model(feed_id: str, item: ParsedItem) -> FeedItemModel:
    return FeedItemModel(
        feed_id=feed_id,
        title=item.title,
        content=item.content or "",
        author=item.author,
        published_at=item.published_at,
        url=item.url,
        guid=item.guid,
        media_refs=list(item.media_refs),
    )


def insert_items_skip_duplicates(
    session: Session, feed_id: str, items: Iterable[ParsedItem]
) -> int:
    """Insert items whose guid is new for ``feed_id``; returns the insert count."""
    unique = {}
    for item in items:
        if item.guid and item.guid not in unique:
            unique[item.guid] = item
    if not unique:
        return 0

    existing = set(
        session.execute(
            select(FeedItemModel.guid).where(
                FeedItemModel.feed_id == feed_id,
                FeedItemModel.guid.in_(list(unique)),
            )
        ).scalars()
    )
    fresh = [item for guid, item in unique.items() if guid not in existing]
    if not fresh:
        return 0

    session.add_all(_item_model(feed_id, item) for item in fresh)
    try:
        session.commit()
        return len(fresh)
    except IntegrityError:
        # A concurrent writer inserted some of the same guids.
        session.rollback()

    inserted = 0
    for item in fresh:
        try:
            with session.begin_nested():
                session.add(_item_model(feed_id, item))
            inserted += 1
        except IntegrityError:
            logger.debug("Skipping duplicate item %s for feed %s", item.guid, feed_id)
    _commit(session)
    return inserted


def count_items(session: Session, feed_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(FeedItemModel)
        .where(FeedItemModel.feed_id == feed_id)
    ).scalar_one()


# ---------------------------------------------------------------------------
# Subscriptions and per-user state
# ---------------------------------------------------------------------------


def find_subscription(
    session: Session, user_pubkey: str, feed_id: str
) -> Optional[SubscriptionModel]:
    stmt = select(SubscriptionModel).where(
        SubscriptionModel.user_pubkey == user_pubkey,
        SubscriptionModel.feed_id == feed_id,
    )
    return session.execute(stmt).scalar_one_or_none()


def add_subscription(
    session: Session,
    user_pubkey: str,
    feed_id: str,
    tags: Optional[List[str]] = None,
    category_id: Optional[str] = None,
) -> SubscriptionModel:
    subscription = SubscriptionModel(
        user_pubkey=user_pubkey,
        feed_id=feed_id,
        tags=list(tags or []),
        category_id=category_id,
    )
    session.add(subscription)
    _commit(session)
    return subscription


def list_subscriptions(
    session: Session, user_pubkey: str
) -> List[Tuple[SubscriptionModel, FeedModel]]:
    stmt = (
        select(SubscriptionModel, FeedModel)
        .join(FeedModel, FeedModel.id == SubscriptionModel.feed_id)
        .where(SubscriptionModel.user_pubkey == user_pubkey)
        .order_by(FeedModel.title)
    )
    return [(row[0], row[1]) for row in session.execute(stmt).all()]


def delete_subscription(session: Session, user_pubkey: str, feed_id: str) -> bool:
    result = session.execute(
        delete(SubscriptionModel).where(
            SubscriptionModel.user_pubkey == user_pubkey,
            SubscriptionModel.feed_id == feed_id,
        )
    )
    _commit(session)
    return result.rowcount > 0


def mark_items_read(session: Session, user_pubkey: str, item_ids: Iterable[str]) -> int:
    """Record read state for each item; already-read items are left alone."""
    ids = list(dict.fromkeys(item_ids))
    if not ids:
        return 0
    already = set(
        session.execute(
            select(ReadItemModel.item_id).where(
                ReadItemModel.user_pubkey == user_pubkey,
                ReadItemModel.item_id.in_(ids),
            )
        ).scalars()
    )
    fresh = [item_id for item_id in ids if item_id not in already]
    session.add_all(
        ReadItemModel(user_pubkey=user_pubkey, item_id=item_id) for item_id in fresh
    )
    _commit(session)
    return len(fresh)


def mark_item_unread(session: Session, user_pubkey: str, item_id: str) -> None:
    session.execute(
        delete(ReadItemModel).where(
            ReadItemModel.user_pubkey == user_pubkey,
            ReadItemModel.item_id == item_id,
        )
    )
    _commit(session)


def add_favorite(session: Session, user_pubkey: str, item_id: str) -> bool:
    if session.get(FavoriteModel, (user_pubkey, item_id)) is not None:
        return False
    session.add(FavoriteModel(user_pubkey=user_pubkey, item_id=item_id))
    _commit(session)
    return True


def remove_favorite(session: Session, user_pubkey: str, item_id: str) -> None:
    session.execute(
        delete(FavoriteModel).where(
            FavoriteModel.user_pubkey == user_pubkey,
            FavoriteModel.item_id == item_id,
        )
    )
    _commit(session)
