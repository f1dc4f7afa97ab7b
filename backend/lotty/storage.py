"""
Access layer: CRUD over the schema, keyed by numeric ids.

Joined views (listing + images + owner, chat + participants + last message,
user + latest subscription) are assembled here with explicit queries; the
models declare no ORM relationships.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import delete, func, or_, select, update as sa_update
from sqlalchemy.orm import Session

from lotty.models import (
    Chat,
    Comment,
    Listing,
    ListingImage,
    Message,
    ModerationLog,
    Offer,
    Rating,
    Subscription,
    User,
    UserSession,
    utcnow,
)
from lotty.schemas import ListingFilters


def as_utc(value: dt.datetime | None) -> dt.datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


# -----------------------
# Users & sessions
# -----------------------
def get_user(db: Session, user_id: int) -> User | None:
    return db.get(User, int(user_id))


def get_user_by_username(db: Session, username: str) -> User | None:
    return db.execute(select(User).where(User.username == username)).scalar_one_or_none()


def create_user(db: Session, *, username: str, password_hash: str, full_name: str, phone: str, role: str = "user") -> User:
    user = User(username=username, password_hash=password_hash, full_name=full_name, phone=phone, role=role)
    db.add(user)
    db.flush()
    return user


def count_users(db: Session) -> int:
    return int(db.execute(select(func.count(User.id))).scalar_one())


def create_session(db: Session, *, user_id: int, token_hash: str, expires_at: dt.datetime) -> UserSession:
    s = UserSession(user_id=int(user_id), token_hash=token_hash, expires_at=expires_at)
    db.add(s)
    db.flush()
    return s


def get_session_user(db: Session, token_hash: str, *, now: dt.datetime | None = None) -> User | None:
    now = now or utcnow()
    row = db.execute(select(UserSession).where(UserSession.token_hash == token_hash)).scalar_one_or_none()
    if not row:
        return None
    if as_utc(row.expires_at) <= now:
        db.delete(row)
        return None
    return db.get(User, int(row.user_id))


def delete_session(db: Session, token_hash: str) -> None:
    db.execute(delete(UserSession).where(UserSession.token_hash == token_hash))


def delete_expired_sessions(db: Session, now: dt.datetime) -> int:
    stmt = delete(UserSession).where(UserSession.expires_at <= now).execution_options(synchronize_session=False)
    res = db.execute(stmt)
    return int(res.rowcount or 0)


# -----------------------
# Subscriptions
# -----------------------
def get_latest_subscription(db: Session, user_id: int) -> Subscription | None:
    """
    Most recent subscription by end date, whatever its status.
    """
    stmt = (
        select(Subscription)
        .where(Subscription.user_id == int(user_id))
        .order_by(Subscription.end_date.desc(), Subscription.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def get_active_subscription(db: Session, user_id: int) -> Subscription | None:
    stmt = (
        select(Subscription)
        .where((Subscription.user_id == int(user_id)) & (Subscription.status == "active"))
        .order_by(Subscription.end_date.desc(), Subscription.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def create_subscription(
    db: Session,
    *,
    user_id: int,
    plan_type: str,
    start_date: dt.datetime,
    end_date: dt.datetime,
    max_listings: int,
) -> Subscription:
    # At most one active subscription per user.
    db.execute(
        sa_update(Subscription)
        .where((Subscription.user_id == int(user_id)) & (Subscription.status == "active"))
        .values(status="expired")
    )
    sub = Subscription(
        user_id=int(user_id),
        plan_type=plan_type,
        status="active",
        start_date=start_date,
        end_date=end_date,
        max_listings=int(max_listings),
    )
    db.add(sub)
    db.flush()
    return sub


def expire_subscription(db: Session, subscription_id: int) -> None:
    db.execute(sa_update(Subscription).where(Subscription.id == int(subscription_id)).values(status="expired"))


def list_users_with_subscription(db: Session) -> list[tuple[User, Subscription | None]]:
    users = db.execute(select(User).order_by(User.created_at.desc(), User.id.desc())).scalars().all()
    return [(u, get_active_subscription(db, u.id) or get_latest_subscription(db, u.id)) for u in users]


def list_lapsed_active_subscriptions(db: Session, now: dt.datetime) -> list[Subscription]:
    """
    Subscriptions still marked active whose end date has passed.
    """
    stmt = (
        select(Subscription)
        .where((Subscription.status == "active") & (Subscription.end_date < now))
        .order_by(Subscription.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


# -----------------------
# Listings
# -----------------------
def get_listing(db: Session, listing_id: int) -> Listing | None:
    return db.get(Listing, int(listing_id))


def get_listing_images(db: Session, listing_id: int) -> list[ListingImage]:
    stmt = select(ListingImage).where(ListingImage.listing_id == int(listing_id)).order_by(ListingImage.id.asc())
    return list(db.execute(stmt).scalars().all())


def get_images_for_listings(db: Session, listing_ids: list[int]) -> dict[int, list[ListingImage]]:
    out: dict[int, list[ListingImage]] = {int(i): [] for i in listing_ids}
    if not listing_ids:
        return out
    stmt = select(ListingImage).where(ListingImage.listing_id.in_(listing_ids)).order_by(ListingImage.id.asc())
    for img in db.execute(stmt).scalars().all():
        out.setdefault(int(img.listing_id), []).append(img)
    return out


def query_listings(db: Session, filters: ListingFilters) -> list[Listing]:
    stmt = select(Listing)
    if filters.search:
        like = f"%{filters.search.strip()}%"
        stmt = stmt.where(or_(Listing.title.ilike(like), Listing.description.ilike(like)))
    if filters.department:
        stmt = stmt.where(Listing.department == filters.department)
    if filters.city:
        stmt = stmt.where(Listing.city == filters.city)
    if filters.zone:
        stmt = stmt.where(Listing.zone == filters.zone)
    if filters.status:
        stmt = stmt.where(Listing.status == filters.status)
    if filters.user_id is not None:
        stmt = stmt.where(Listing.user_id == int(filters.user_id))
    if filters.min_price is not None:
        stmt = stmt.where(Listing.price >= filters.min_price)
    if filters.max_price is not None:
        stmt = stmt.where(Listing.price <= filters.max_price)
    if filters.currency:
        stmt = stmt.where(Listing.currency == filters.currency)
    if filters.min_size is not None:
        stmt = stmt.where(Listing.land_size >= filters.min_size)
    if filters.max_size is not None:
        stmt = stmt.where(Listing.land_size <= filters.max_size)
    if filters.owner_type:
        stmt = stmt.where(Listing.owner_type == filters.owner_type)
    if filters.owner_name:
        stmt = stmt.where(Listing.owner_name.ilike(f"%{filters.owner_name.strip()}%"))
    if filters.title_status:
        stmt = stmt.where(Listing.title_status == filters.title_status)
    if filters.payment_condition:
        stmt = stmt.where(Listing.payment_condition == filters.payment_condition)

    sort_by = filters.sort_by or "newest"
    if sort_by == "price_asc":
        stmt = stmt.order_by(Listing.price.asc(), Listing.id.desc())
    elif sort_by == "price_desc":
        stmt = stmt.order_by(Listing.price.desc(), Listing.id.desc())
    elif sort_by == "az":
        stmt = stmt.order_by(func.lower(Listing.title).asc(), Listing.id.asc())
    else:
        stmt = stmt.order_by(Listing.created_at.desc(), Listing.id.desc())

    if filters.limit:
        stmt = stmt.limit(int(filters.limit))
    return list(db.execute(stmt).scalars().all())


def insert_listing(db: Session, *, user_id: int, values: dict[str, Any]) -> Listing:
    listing = Listing(user_id=int(user_id), **values)
    db.add(listing)
    db.flush()
    return listing


def slug_exists(db: Session, slug: str) -> bool:
    return db.execute(select(Listing.id).where(Listing.slug == slug)).first() is not None


def update_listing(db: Session, listing: Listing, updates: dict[str, Any]) -> Listing:
    for key, value in updates.items():
        setattr(listing, key, value)
    listing.updated_at = utcnow()
    db.add(listing)
    db.flush()
    return listing


def archive_listings_for_user(db: Session, user_id: int) -> int:
    result = db.execute(
        sa_update(Listing)
        .where(Listing.user_id == int(user_id))
        .values(status="archived", updated_at=utcnow())
    )
    return int(result.rowcount or 0)


def add_image(db: Session, *, listing_id: int, url: str, is_title_document: bool) -> ListingImage:
    img = ListingImage(listing_id=int(listing_id), url=url, is_title_document=bool(is_title_document))
    db.add(img)
    db.flush()
    return img


# -----------------------
# Chats & messages
# -----------------------
def find_chat(db: Session, *, listing_id: int, buyer_id: int, seller_id: int) -> Chat | None:
    stmt = select(Chat).where(
        (Chat.listing_id == int(listing_id)) & (Chat.buyer_id == int(buyer_id)) & (Chat.seller_id == int(seller_id))
    )
    return db.execute(stmt).scalar_one_or_none()


def insert_chat(db: Session, *, listing_id: int, buyer_id: int, seller_id: int) -> Chat:
    chat = Chat(listing_id=int(listing_id), buyer_id=int(buyer_id), seller_id=int(seller_id))
    db.add(chat)
    db.flush()
    return chat


def get_chat(db: Session, chat_id: int) -> Chat | None:
    return db.get(Chat, int(chat_id))


def get_last_message(db: Session, chat_id: int) -> Message | None:
    stmt = select(Message).where(Message.chat_id == int(chat_id)).order_by(Message.created_at.desc(), Message.id.desc()).limit(1)
    return db.execute(stmt).scalar_one_or_none()


def list_chats_for_user(db: Session, user_id: int) -> list[tuple[Chat, Listing | None, User | None, Message | None]]:
    chats = db.execute(
        select(Chat)
        .where((Chat.buyer_id == int(user_id)) | (Chat.seller_id == int(user_id)))
        .order_by(Chat.updated_at.desc(), Chat.id.desc())
    ).scalars().all()
    out = []
    for c in chats:
        other_id = c.seller_id if int(c.buyer_id) == int(user_id) else c.buyer_id
        out.append((c, db.get(Listing, int(c.listing_id)), db.get(User, int(other_id)), get_last_message(db, c.id)))
    return out


def list_messages(db: Session, chat_id: int) -> list[Message]:
    stmt = select(Message).where(Message.chat_id == int(chat_id)).order_by(Message.created_at.asc(), Message.id.asc())
    return list(db.execute(stmt).scalars().all())


def add_message(db: Session, *, chat_id: int, sender_id: int, content: str) -> Message:
    msg = Message(chat_id=int(chat_id), sender_id=int(sender_id), content=content)
    db.add(msg)
    db.execute(sa_update(Chat).where(Chat.id == int(chat_id)).values(updated_at=utcnow()))
    db.flush()
    return msg


def mark_messages_read(db: Session, *, chat_id: int, reader_id: int) -> None:
    db.execute(
        sa_update(Message)
        .where((Message.chat_id == int(chat_id)) & (Message.sender_id != int(reader_id)) & (Message.read.is_(False)))
        .values(read=True)
    )


# -----------------------
# Offers, comments, ratings
# -----------------------
def create_offer(db: Session, *, listing_id: int, buyer_id: int, amount: float, currency: str, message: str | None) -> Offer:
    offer = Offer(listing_id=int(listing_id), buyer_id=int(buyer_id), amount=amount, currency=currency, message=message)
    db.add(offer)
    db.flush()
    return offer


def get_offer(db: Session, offer_id: int) -> Offer | None:
    return db.get(Offer, int(offer_id))


def update_offer_status(db: Session, offer: Offer, status: str) -> Offer:
    offer.status = status
    db.add(offer)
    db.flush()
    return offer


def add_comment(db: Session, *, listing_id: int, user_id: int, content: str) -> Comment:
    c = Comment(listing_id=int(listing_id), user_id=int(user_id), content=content)
    db.add(c)
    db.flush()
    return c


def list_comments(db: Session, listing_id: int) -> list[Comment]:
    stmt = select(Comment).where(Comment.listing_id == int(listing_id)).order_by(Comment.created_at.asc(), Comment.id.asc())
    return list(db.execute(stmt).scalars().all())


def add_rating(db: Session, *, listing_id: int, user_id: int, rating: int) -> Rating:
    r = Rating(listing_id=int(listing_id), user_id=int(user_id), rating=int(rating))
    db.add(r)
    db.flush()
    return r


def average_rating(db: Session, listing_id: int) -> float | None:
    avg = db.execute(select(func.avg(Rating.rating)).where(Rating.listing_id == int(listing_id))).scalar_one()
    return round(float(avg), 2) if avg is not None else None


# -----------------------
# Admin
# -----------------------
def get_stats(db: Session) -> dict[str, int]:
    def _count(stmt) -> int:
        return int(db.execute(stmt).scalar_one() or 0)

    return {
        "totalUsers": _count(select(func.count(User.id))),
        "totalListings": _count(select(func.count(Listing.id))),
        "activeSubscriptions": _count(select(func.count(Subscription.id)).where(Subscription.status == "active")),
        "pendingVerifications": _count(select(func.count(Listing.id)).where(Listing.status == "pending")),
    }


def log_moderation(
    db: Session,
    *,
    actor_user_id: int | None,
    entity_type: str,
    entity_id: int,
    action: str,
    reason: str = "",
) -> None:
    db.add(
        ModerationLog(
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            entity_type=(entity_type or "").strip(),
            entity_id=int(entity_id),
            action=(action or "").strip(),
            reason=(reason or "").strip(),
        )
    )


def list_moderation_logs(db: Session, *, limit: int = 100) -> list[ModerationLog]:
    stmt = select(ModerationLog).order_by(ModerationLog.created_at.desc(), ModerationLog.id.desc()).limit(int(limit))
    return list(db.execute(stmt).scalars().all())
