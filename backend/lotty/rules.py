"""
Business rules: subscription gating, listing validation and visibility,
moderation, plan assignment and idempotent chat creation.

Every function takes an open `Session` and the acting `User` (or None for
anonymous viewers) and raises `lotty.errors` exceptions on refusal.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
import secrets
from typing import Any

import pydantic
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from lotty import storage
from lotty.errors import Forbidden, NotFound, ValidationError
from lotty.models import Chat, Listing, Subscription, User, utcnow
from lotty.schemas import ListingCreateIn, ListingFilters, ListingUpdateIn

logger = logging.getLogger(__name__)

# Minimum asking price per currency.
PRICE_FLOORS = {
    "PYG": 1_000_000,
    "USD": 1_000,
}

_PRICE_FLOOR_MESSAGES = {
    "PYG": "El precio en Gs. debe ser de al menos 7 dígitos (1.000.000 Gs.)",
    "USD": "El precio en USD debe ser de al menos 4 dígitos (1.000 USD)",
}


def is_admin(user: User | None) -> bool:
    return bool(user) and (user.role or "").lower() == "admin"


def _is_owner_or_admin(user: User | None, listing: Listing) -> bool:
    if not user:
        return False
    return is_admin(user) or int(listing.user_id) == int(user.id)


# -----------------------
# Subscriptions
# -----------------------
def is_effectively_active(sub: Subscription | None, *, now: dt.datetime | None = None) -> bool:
    """
    A subscription counts only while its status is active AND its end date is
    still in the future; the status column lags until the sweep runs.
    """
    if sub is None or sub.status != "active":
        return False
    now = now or utcnow()
    return storage.as_utc(sub.end_date) > now


def check_active_subscription(db: Session, user_id: int, *, now: dt.datetime | None = None) -> bool:
    # At most one row per user is active, so this is the user's current plan.
    return is_effectively_active(storage.get_active_subscription(db, user_id), now=now)


def assign_plan(
    db: Session,
    *,
    actor: User,
    user_id: int,
    plan_type: str,
    duration_days: int,
    max_listings: int,
    now: dt.datetime | None = None,
) -> Subscription:
    if not is_admin(actor):
        raise Forbidden()
    if storage.get_user(db, user_id) is None:
        raise NotFound("User not found")
    if int(duration_days) < 1:
        raise ValidationError("durationDays must be at least 1", field="durationDays")
    start = now or utcnow()
    sub = storage.create_subscription(
        db,
        user_id=user_id,
        plan_type=plan_type.strip(),
        start_date=start,
        end_date=start + dt.timedelta(days=int(duration_days)),
        max_listings=max_listings,
    )
    storage.log_moderation(
        db,
        actor_user_id=actor.id,
        entity_type="subscription",
        entity_id=sub.id,
        action="assign_plan",
        reason=f"{sub.plan_type} for {int(duration_days)} days",
    )
    return sub


# -----------------------
# Listing validation
# -----------------------
def _first_error_field(exc: pydantic.ValidationError) -> tuple[str, str]:
    err = exc.errors()[0]
    loc = [str(p) for p in err.get("loc", ()) if not isinstance(p, int)]
    field = loc[-1] if loc else ""
    msg = str(err.get("msg") or "Invalid value")
    return field, f"{field}: {msg}" if field else msg


def _check_price_floor(currency: str, price: float) -> None:
    floor = PRICE_FLOORS.get(currency)
    if floor is not None and float(price) < floor:
        raise ValidationError(_PRICE_FLOOR_MESSAGES[currency], field="price")


def _check_location(department: str | None, city: str | None, zone: str | None) -> None:
    for field, value in (("department", department), ("city", city), ("zone", zone)):
        if not (value or "").strip():
            raise ValidationError("Departamento, Ciudad y Zona son obligatorios", field=field)


def _check_map_reference(google_maps_link: str | None, lat: float | None, lng: float | None) -> None:
    if (google_maps_link or "").strip():
        return
    if lat is not None and lng is not None:
        return
    raise ValidationError("Debes proveer un link de Google Maps o coordenadas GPS", field="googleMapsLink")


def slugify(s: str) -> str:
    s = (s or "").strip().lower()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    return re.sub(r"-+", "-", s).strip("-") or "terreno"


def _unique_slug(db: Session, title: str) -> str:
    base = slugify(title)[:200]
    slug = base
    while storage.slug_exists(db, slug):
        slug = f"{base}-{secrets.token_hex(3)}"
    return slug


# -----------------------
# Listings
# -----------------------
def create_listing(db: Session, payload: Any, *, user: User, now: dt.datetime | None = None) -> Listing:
    """
    Preconditions are checked in order and the first failure wins:
    subscription (or admin), schema, price floor, location, map reference.
    New listings always start as `pending`.
    """
    if not is_admin(user) and not check_active_subscription(db, user.id, now=now):
        raise Forbidden("No tenés un plan activo. Activá uno en la sección de Planes.")

    try:
        data = ListingCreateIn.model_validate(payload if payload is not None else {})
    except pydantic.ValidationError as exc:
        field, msg = _first_error_field(exc)
        raise ValidationError(msg, field=field or None)

    _check_price_floor(data.currency, data.price)
    _check_location(data.department, data.city, data.zone)
    _check_map_reference(data.google_maps_link, data.lat, data.lng)

    values = data.model_dump()
    for key in ("department", "city", "zone", "title"):
        values[key] = (values[key] or "").strip()
    values["status"] = "pending"
    values["slug"] = _unique_slug(db, data.title)
    listing = storage.insert_listing(db, user_id=user.id, values=values)
    logger.info("Listing %s created by user %s (pending moderation)", listing.id, user.id)
    return listing


_NOT_NULL_ON_UPDATE = frozenset(
    {
        "title",
        "description",
        "currency",
        "price",
        "department",
        "city",
        "zone",
        "land_size",
        "dimensions",
        "owner_name",
        "owner_type",
        "title_status",
        "phone",
        "payment_condition",
        "status",
        "featured",
    }
)


def update_listing(db: Session, listing_id: int, updates: ListingUpdateIn, *, user: User) -> Listing:
    listing = storage.get_listing(db, listing_id)
    if listing is None:
        raise NotFound()
    if not _is_owner_or_admin(user, listing):
        raise Forbidden()

    changes = updates.model_dump(exclude_unset=True)
    for key, value in changes.items():
        if value is None and key in _NOT_NULL_ON_UPDATE:
            raise ValidationError(f"{to_camel(key)} cannot be null", field=to_camel(key))
    if "status" in changes or "featured" in changes:
        if not is_admin(user):
            raise Forbidden("Only admins can change the listing status")
        if listing.status == "archived" and changes.get("status", "archived") != "archived":
            raise ValidationError("Archived listings cannot be reactivated", field="status")

    # Re-check the creation rules against the merged record.
    merged = {c: getattr(listing, c) for c in ("currency", "price", "department", "city", "zone", "google_maps_link", "lat", "lng")}
    merged.update({k: v for k, v in changes.items() if k in merged})
    if {"currency", "price"} & changes.keys():
        _check_price_floor(merged["currency"], merged["price"])
    if {"department", "city", "zone"} & changes.keys():
        _check_location(merged["department"], merged["city"], merged["zone"])
    if {"google_maps_link", "lat", "lng"} & changes.keys():
        _check_map_reference(merged["google_maps_link"], merged["lat"], merged["lng"])

    return storage.update_listing(db, listing, changes)


def moderate_listing(db: Session, listing_id: int, *, action: str, reason: str | None, actor: User) -> Listing:
    if not is_admin(actor):
        raise Forbidden()
    listing = storage.get_listing(db, listing_id)
    if listing is None:
        raise NotFound()
    if listing.status == "archived":
        raise ValidationError("Archived listings cannot be moderated", field="action")
    if action == "approve":
        changes = {"status": "active", "rejection_reason": None}
    elif action == "reject":
        changes = {"status": "rejected", "rejection_reason": (reason or "").strip() or None}
    else:
        raise ValidationError("action must be approve or reject", field="action")
    listing = storage.update_listing(db, listing, changes)
    storage.log_moderation(
        db,
        actor_user_id=actor.id,
        entity_type="listing",
        entity_id=listing.id,
        action=action,
        reason=listing.rejection_reason or "",
    )
    return listing


def get_visible_listing(db: Session, listing_id: int, *, viewer: User | None) -> Listing:
    """
    Archived listings are indistinguishable from missing ones unless the
    viewer is the owner or an admin.
    """
    listing = storage.get_listing(db, listing_id)
    if listing is None:
        raise NotFound()
    if listing.status == "archived" and not _is_owner_or_admin(viewer, listing):
        raise NotFound()
    return listing


def parse_filters(raw: dict[str, Any]) -> ListingFilters:
    values = {k: v for k, v in raw.items() if v is not None and v != ""}
    try:
        return ListingFilters.model_validate(values)
    except pydantic.ValidationError as exc:
        field, msg = _first_error_field(exc)
        raise ValidationError(msg, field=field or None)


def list_listings(db: Session, raw: dict[str, Any], *, viewer: User | None) -> list[Listing]:
    """
    Public browsing is pinned to `active` and ignores any requested status.
    Dashboard queries scoped to a `user_id` see every status, but only for
    the viewer's own account or for an admin.
    """
    user_id = raw.get("user_id")
    scoped_to_self = user_id is not None and viewer is not None and (
        is_admin(viewer) or int(viewer.id) == int(user_id)
    )
    if not scoped_to_self:
        raw = {**raw, "status": "active"}
    return storage.query_listings(db, parse_filters(raw))


# -----------------------
# Chats
# -----------------------
def create_chat(db: Session, *, listing_id: int, buyer: User) -> Chat:
    listing = storage.get_listing(db, listing_id)
    if listing is None:
        raise NotFound("Listing not found")
    if listing.status == "archived":
        raise ValidationError("Listing is archived", field="listingId")
    existing = storage.find_chat(db, listing_id=listing.id, buyer_id=buyer.id, seller_id=listing.user_id)
    if existing:
        return existing
    return storage.insert_chat(db, listing_id=listing.id, buyer_id=buyer.id, seller_id=listing.user_id)


def get_participant_chat(db: Session, chat_id: int, *, user: User) -> Chat:
    chat = storage.get_chat(db, chat_id)
    if chat is None or int(user.id) not in {int(chat.buyer_id), int(chat.seller_id)}:
        raise NotFound("Chat not found")
    return chat


def post_message(db: Session, chat_id: int, *, content: str, sender: User):
    chat = get_participant_chat(db, chat_id, user=sender)
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message content is required", field="content")
    return storage.add_message(db, chat_id=chat.id, sender_id=sender.id, content=text)


def read_messages(db: Session, chat_id: int, *, reader: User):
    chat = get_participant_chat(db, chat_id, user=reader)
    storage.mark_messages_read(db, chat_id=chat.id, reader_id=reader.id)
    return storage.list_messages(db, chat.id)


# -----------------------
# Offers & feedback
# -----------------------
def _open_listing(db: Session, listing_id: int) -> Listing:
    listing = storage.get_listing(db, listing_id)
    if listing is None or listing.status == "archived":
        raise NotFound("Listing not found")
    return listing


def make_offer(db: Session, *, listing_id: int, amount: float, currency: str, message: str | None, buyer: User):
    listing = _open_listing(db, listing_id)
    if int(listing.user_id) == int(buyer.id):
        raise ValidationError("You cannot make an offer on your own listing", field="listingId")
    return storage.create_offer(
        db,
        listing_id=listing.id,
        buyer_id=buyer.id,
        amount=amount,
        currency=currency,
        message=(message or "").strip() or None,
    )


def respond_to_offer(db: Session, offer_id: int, *, status: str, user: User):
    offer = storage.get_offer(db, offer_id)
    if offer is None:
        raise NotFound("Offer not found")
    listing = storage.get_listing(db, offer.listing_id)
    if listing is None or not _is_owner_or_admin(user, listing):
        raise Forbidden()
    if offer.status != "pending":
        raise ValidationError("Offer was already answered", field="status")
    return storage.update_offer_status(db, offer, status)


def add_comment(db: Session, listing_id: int, *, content: str, user: User):
    listing = _open_listing(db, listing_id)
    text = (content or "").strip()
    if not text:
        raise ValidationError("Comment content is required", field="content")
    return storage.add_comment(db, listing_id=listing.id, user_id=user.id, content=text)


def add_rating(db: Session, listing_id: int, *, rating: int, user: User):
    listing = _open_listing(db, listing_id)
    return storage.add_rating(db, listing_id=listing.id, user_id=user.id, rating=rating)
