from __future__ import annotations

import datetime as dt
import logging
import os
from typing import Annotated, Any

from fastapi import Body, Cookie, Depends, FastAPI, File, Form, Query, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from lotty import rules, storage
from lotty.config import (
    allowed_hosts,
    cookie_secure,
    cors_origins,
    enforce_secure_secrets,
    log_level,
    login_attempt_limit,
    login_attempt_window_seconds,
    seed_demo_data,
    session_cookie_name,
    sweep_interval_seconds,
    sweeper_enabled,
    uploads_dir,
    uploads_url_prefix,
)
from lotty.db import session_scope
from lotty.errors import AppError, Conflict, Forbidden, NotFound, Unauthorized
from lotty.models import Chat, Comment, Listing, ListingImage, Message, ModerationLog, Offer, Rating, Subscription, User, utcnow
from lotty.rate_limit import login_limiter
from lotty.schemas import (
    AssignPlanIn,
    ChatCreateIn,
    CommentIn,
    ListingUpdateIn,
    LoginIn,
    MessageIn,
    ModerateIn,
    OfferCreateIn,
    OfferRespondIn,
    RatingIn,
    RegisterIn,
)
from lotty.security import (
    hash_password,
    new_session_token,
    session_expiry,
    session_max_age_seconds,
    session_token_digest,
    verify_password,
)
from lotty.sweeper import SubscriptionSweeper
from lotty.uploads import read_image_upload, store_image


logging.basicConfig(level=log_level(), format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Lotty API")

# Production hardening: ensure we don't run with dangerous defaults.
enforce_secure_secrets()

# Host protection; configure ALLOWED_HOSTS in prod.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts())


@app.middleware("http")
async def _security_headers(request, call_next):
    resp = await call_next(request)
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("X-Frame-Options", "DENY")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    # Session cookies must travel with cross-origin requests from the web client.
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

os.makedirs(uploads_dir(), exist_ok=True)
app.mount(uploads_url_prefix(), StaticFiles(directory=uploads_dir()), name="uploads")


# -----------------------
# Error rendering
# -----------------------
@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path") and not isinstance(p, int)]
    field = loc[-1] if loc else None
    msg = str(first.get("msg") or "Invalid request")
    content: dict[str, Any] = {"message": f"{field}: {msg}" if field else msg}
    if field:
        content["field"] = field
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(Exception)
async def _internal_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal Server Error"})


# -----------------------
# Background sweep
# -----------------------
sweeper = SubscriptionSweeper(sweep_interval_seconds())


@app.on_event("startup")
def _seed_demo_data() -> None:
    if not seed_demo_data():
        return
    try:
        with session_scope() as db:
            _insert_demo_data(db)
    except SQLAlchemyError:
        # DB not migrated yet; the next start seeds it.
        logger.warning("Skipping demo seed: database is not ready", exc_info=True)


def _insert_demo_data(db: Session) -> None:
    """
    First-run demo content for local development: an admin, a user with an
    unlimited 30-day plan and one approved listing.
    """
    if storage.count_users(db) > 0:
        return
    logger.info("Seeding database...")
    storage.create_user(
        db,
        username="admin@lotty.py",
        password_hash=hash_password("admin123"),
        full_name="Admin User",
        phone="0981000000",
        role="admin",
    )
    user = storage.create_user(
        db,
        username="user@lotty.py",
        password_hash=hash_password("user123"),
        full_name="Juan Perez",
        phone="0971111111",
    )
    now = utcnow()
    storage.create_subscription(
        db,
        user_id=user.id,
        plan_type="mensual",
        start_date=now,
        end_date=now + dt.timedelta(days=30),
        max_listings=-1,
    )
    storage.insert_listing(
        db,
        user_id=user.id,
        values={
            "title": "Terreno en Encarnación",
            "description": "Hermoso terreno cerca de la costanera. Ideal para inversión.",
            "currency": "USD",
            "price": 50000,
            "department": "Itapúa",
            "city": "Encarnación",
            "zone": "Barrio San Pedro",
            "google_maps_link": "https://maps.google.com/?q=-27.33,-55.86",
            "land_size": 360,
            "dimensions": "12x30",
            "owner_name": "Juan Perez",
            "owner_type": "owner",
            "title_status": "has_title",
            "phone": "0971111111",
            "payment_condition": "cash_only",
            "status": "active",
            "featured": True,
            "slug": "terreno-en-encarnacion",
        },
    )
    logger.info("Database seeded!")


@app.on_event("startup")
def _start_sweeper() -> None:
    if sweeper_enabled():
        sweeper.start()


@app.on_event("shutdown")
def _stop_sweeper() -> None:
    sweeper.stop()


# -----------------------
# Dependencies
# -----------------------
def get_db():
    with session_scope() as db:
        yield db


SessionToken = Annotated[str | None, Cookie(alias=session_cookie_name())]


def get_optional_user(db: Annotated[Session, Depends(get_db)], token: SessionToken = None) -> User | None:
    if not token:
        return None
    return storage.get_session_user(db, session_token_digest(token))


def get_current_user(user: Annotated[User | None, Depends(get_optional_user)]) -> User:
    if user is None:
        raise Unauthorized()
    return user


def require_admin(user: Annotated[User, Depends(get_current_user)]) -> User:
    if not rules.is_admin(user):
        raise Forbidden()
    return user


DB = Annotated[Session, Depends(get_db)]
CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[User | None, Depends(get_optional_user)]
AdminUser = Annotated[User, Depends(require_admin)]


def _start_session(db: Session, response: Response, user: User) -> None:
    token = new_session_token()
    storage.create_session(db, user_id=user.id, token_hash=session_token_digest(token), expires_at=session_expiry())
    response.set_cookie(
        key=session_cookie_name(),
        value=token,
        max_age=session_max_age_seconds(),
        httponly=True,
        samesite="lax",
        secure=cookie_secure(),
    )


# -----------------------
# Serializers
# -----------------------
def _iso(value: dt.datetime | None) -> str | None:
    v = storage.as_utc(value)
    return v.isoformat() if v else None


def _user_out(u: User) -> dict[str, Any]:
    # Never includes the password hash.
    return {
        "id": u.id,
        "username": u.username,
        "fullName": u.full_name,
        "phone": u.phone,
        "role": u.role,
        "createdAt": _iso(u.created_at),
    }


def _public_user_out(u: User | None) -> dict[str, Any] | None:
    if u is None:
        return None
    return {"id": u.id, "fullName": u.full_name, "phone": u.phone}


def _subscription_out(s: Subscription | None) -> dict[str, Any] | None:
    if s is None:
        return None
    return {
        "id": s.id,
        "userId": s.user_id,
        "planType": s.plan_type,
        "status": s.status,
        "startDate": _iso(s.start_date),
        "endDate": _iso(s.end_date),
        "maxListings": s.max_listings,
    }


def _image_out(i: ListingImage) -> dict[str, Any]:
    return {"id": i.id, "listingId": i.listing_id, "url": i.url, "isTitleDocument": bool(i.is_title_document)}


def _listing_out(listing: Listing, *, images: list[ListingImage] | None = None) -> dict[str, Any]:
    out = {
        "id": listing.id,
        "userId": listing.user_id,
        "title": listing.title,
        "description": listing.description,
        "currency": listing.currency,
        "price": listing.price,
        "department": listing.department,
        "city": listing.city,
        "zone": listing.zone,
        "lat": listing.lat,
        "lng": listing.lng,
        "googleMapsLink": listing.google_maps_link,
        "landSize": listing.land_size,
        "dimensions": listing.dimensions,
        "ownerName": listing.owner_name,
        "ownerType": listing.owner_type,
        "titleStatus": listing.title_status,
        "phone": listing.phone,
        "email": listing.email,
        "paymentCondition": listing.payment_condition,
        "downPayment": listing.down_payment,
        "barterDescription": listing.barter_description,
        "status": listing.status,
        "featured": bool(listing.featured),
        "rejectionReason": listing.rejection_reason,
        "slug": listing.slug,
        "createdAt": _iso(listing.created_at),
        "updatedAt": _iso(listing.updated_at),
    }
    if images is not None:
        out["images"] = [_image_out(i) for i in images]
    return out


def _message_out(m: Message | None) -> dict[str, Any] | None:
    if m is None:
        return None
    return {
        "id": m.id,
        "chatId": m.chat_id,
        "senderId": m.sender_id,
        "content": m.content,
        "read": bool(m.read),
        "createdAt": _iso(m.created_at),
    }


def _chat_out(c: Chat) -> dict[str, Any]:
    return {
        "id": c.id,
        "listingId": c.listing_id,
        "buyerId": c.buyer_id,
        "sellerId": c.seller_id,
        "createdAt": _iso(c.created_at),
        "updatedAt": _iso(c.updated_at),
    }


def _offer_out(o: Offer) -> dict[str, Any]:
    return {
        "id": o.id,
        "listingId": o.listing_id,
        "buyerId": o.buyer_id,
        "amount": o.amount,
        "currency": o.currency,
        "message": o.message,
        "status": o.status,
        "createdAt": _iso(o.created_at),
    }


def _comment_out(c: Comment) -> dict[str, Any]:
    return {"id": c.id, "listingId": c.listing_id, "userId": c.user_id, "content": c.content, "createdAt": _iso(c.created_at)}


def _rating_out(r: Rating) -> dict[str, Any]:
    return {"id": r.id, "listingId": r.listing_id, "userId": r.user_id, "rating": r.rating, "createdAt": _iso(r.created_at)}


def _log_out(e: ModerationLog) -> dict[str, Any]:
    return {
        "id": e.id,
        "actorUserId": e.actor_user_id,
        "entityType": e.entity_type,
        "entityId": e.entity_id,
        "action": e.action,
        "reason": e.reason,
        "createdAt": _iso(e.created_at),
    }


# -----------------------
# Health
# -----------------------
@app.get("/health")
def health():
    return {"ok": True}


# -----------------------
# Auth
# -----------------------
@app.post("/api/register", status_code=201)
def register(data: RegisterIn, response: Response, db: DB):
    username = data.username.strip().lower()
    if storage.get_user_by_username(db, username):
        raise Conflict("Username already exists", field="username")
    try:
        # Admin accounts are never self-service.
        user = storage.create_user(
            db,
            username=username,
            password_hash=hash_password(data.password),
            full_name=data.full_name.strip(),
            phone=data.phone.strip(),
            role="user",
        )
    except IntegrityError:
        db.rollback()
        raise Conflict("Username already exists", field="username")
    _start_session(db, response, user)
    logger.info("Registered user %s", user.id)
    return _user_out(user)


@app.post("/api/login")
def login(data: LoginIn, response: Response, db: DB):
    username = data.username.strip().lower()
    login_limiter.hit(
        key=f"login:{username}",
        limit=login_attempt_limit(),
        window_seconds=login_attempt_window_seconds(),
        detail="Too many login attempts, try again later",
    )
    user = storage.get_user_by_username(db, username)
    if not user or not verify_password(data.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    _start_session(db, response, user)
    return _user_out(user)


@app.post("/api/logout")
def logout(response: Response, db: DB, me: CurrentUser, token: SessionToken = None):
    if token:
        storage.delete_session(db, session_token_digest(token))
    response.delete_cookie(session_cookie_name())
    return {"ok": True}


@app.get("/api/user")
def current_user(me: OptionalUser):
    return _user_out(me) if me else None


# -----------------------
# Listings
# -----------------------
@app.get("/api/listings")
def list_listings(
    db: DB,
    me: OptionalUser,
    search: str | None = Query(default=None),
    department: str | None = Query(default=None),
    city: str | None = Query(default=None),
    zone: str | None = Query(default=None),
    min_price: float | None = Query(default=None, alias="minPrice"),
    max_price: float | None = Query(default=None, alias="maxPrice"),
    currency: str | None = Query(default=None),
    min_size: float | None = Query(default=None, alias="minSize"),
    max_size: float | None = Query(default=None, alias="maxSize"),
    owner_type: str | None = Query(default=None, alias="ownerType"),
    owner_name: str | None = Query(default=None, alias="ownerName"),
    title_status: str | None = Query(default=None, alias="titleStatus"),
    payment_condition: str | None = Query(default=None, alias="paymentCondition"),
    sort_by: str | None = Query(default=None, alias="sortBy"),
    status: str | None = Query(default=None),
    user_id: int | None = Query(default=None, alias="userId"),
    limit: int | None = Query(default=None),
):
    raw = {
        "search": search,
        "department": department,
        "city": city,
        "zone": zone,
        "min_price": min_price,
        "max_price": max_price,
        "currency": currency,
        "min_size": min_size,
        "max_size": max_size,
        "owner_type": owner_type,
        "owner_name": owner_name,
        "title_status": title_status,
        "payment_condition": payment_condition,
        "sort_by": sort_by,
        "status": status,
        "user_id": user_id,
        "limit": limit,
    }
    items = rules.list_listings(db, raw, viewer=me)
    images = storage.get_images_for_listings(db, [x.id for x in items])
    return [_listing_out(x, images=images.get(x.id, [])) for x in items]


@app.get("/api/listings/{listing_id:int}")
def get_listing(listing_id: int, db: DB, me: OptionalUser):
    listing = rules.get_visible_listing(db, listing_id, viewer=me)
    out = _listing_out(listing, images=storage.get_listing_images(db, listing.id))
    out["user"] = _public_user_out(storage.get_user(db, listing.user_id))
    out["comments"] = [_comment_out(c) for c in storage.list_comments(db, listing.id)]
    out["averageRating"] = storage.average_rating(db, listing.id)
    return out


@app.post("/api/listings", status_code=201)
def create_listing(db: DB, me: CurrentUser, payload: Annotated[Any, Body()] = None):
    # The raw body is validated inside the rules so the subscription gate runs first.
    listing = rules.create_listing(db, payload, user=me)
    return _listing_out(listing, images=[])


@app.patch("/api/listings/{listing_id:int}")
def update_listing(listing_id: int, data: ListingUpdateIn, db: DB, me: CurrentUser):
    listing = rules.update_listing(db, listing_id, data, user=me)
    return _listing_out(listing, images=storage.get_listing_images(db, listing.id))


@app.post("/api/listings/{listing_id:int}/images", status_code=201)
def upload_listing_image(
    listing_id: int,
    db: DB,
    me: CurrentUser,
    image: UploadFile | None = File(default=None),
    is_title: str = Form(default="false", alias="isTitle"),
):
    listing = storage.get_listing(db, listing_id)
    if listing is None:
        raise NotFound()
    if int(listing.user_id) != int(me.id):
        raise Forbidden()
    raw, content_type = read_image_upload(image)
    url = store_image(raw, content_type)
    img = storage.add_image(db, listing_id=listing.id, url=url, is_title_document=(is_title or "").strip().lower() == "true")
    return _image_out(img)


@app.post("/api/listings/{listing_id:int}/comments", status_code=201)
def post_comment(listing_id: int, data: CommentIn, db: DB, me: CurrentUser):
    return _comment_out(rules.add_comment(db, listing_id, content=data.content, user=me))


@app.post("/api/listings/{listing_id:int}/ratings", status_code=201)
def post_rating(listing_id: int, data: RatingIn, db: DB, me: CurrentUser):
    return _rating_out(rules.add_rating(db, listing_id, rating=data.rating, user=me))


# -----------------------
# Admin
# -----------------------
@app.get("/api/admin/stats")
def admin_stats(db: DB, me: AdminUser):
    return storage.get_stats(db)


@app.get("/api/admin/users")
def admin_users(db: DB, me: AdminUser):
    return [
        {**_user_out(u), "subscription": _subscription_out(sub)}
        for (u, sub) in storage.list_users_with_subscription(db)
    ]


@app.post("/api/admin/users/{user_id:int}/plan")
def admin_assign_plan(user_id: int, data: AssignPlanIn, db: DB, me: AdminUser):
    sub = rules.assign_plan(
        db,
        actor=me,
        user_id=user_id,
        plan_type=data.plan_type,
        duration_days=data.duration_days,
        max_listings=data.max_listings,
    )
    return _subscription_out(sub)


@app.get("/api/admin/listings")
def admin_listings(db: DB, me: AdminUser, status: str | None = Query(default=None)):
    filters = rules.parse_filters({"status": status})
    items = storage.query_listings(db, filters)
    images = storage.get_images_for_listings(db, [x.id for x in items])
    return [_listing_out(x, images=images.get(x.id, [])) for x in items]


@app.post("/api/admin/listings/{listing_id:int}/moderate")
def admin_moderate_listing(listing_id: int, data: ModerateIn, db: DB, me: AdminUser):
    listing = rules.moderate_listing(db, listing_id, action=data.action, reason=data.reason, actor=me)
    return _listing_out(listing)


@app.get("/api/admin/logs")
def admin_logs(db: DB, me: AdminUser, limit: int = Query(default=100, ge=1, le=500)):
    return [_log_out(e) for e in storage.list_moderation_logs(db, limit=limit)]


# -----------------------
# Chats
# -----------------------
@app.post("/api/chats", status_code=201)
def create_chat(data: ChatCreateIn, db: DB, me: CurrentUser):
    return _chat_out(rules.create_chat(db, listing_id=data.listing_id, buyer=me))


@app.get("/api/chats")
def list_chats(db: DB, me: CurrentUser):
    out = []
    for (c, listing, other, last) in storage.list_chats_for_user(db, me.id):
        item = _chat_out(c)
        item["listing"] = _listing_out(listing) if listing else None
        item["otherUser"] = _public_user_out(other)
        item["lastMessage"] = _message_out(last)
        out.append(item)
    return out


@app.get("/api/chats/{chat_id:int}/messages")
def chat_messages(chat_id: int, db: DB, me: CurrentUser):
    return [_message_out(m) for m in rules.read_messages(db, chat_id, reader=me)]


@app.post("/api/chats/{chat_id:int}/messages", status_code=201)
def send_message(chat_id: int, data: MessageIn, db: DB, me: CurrentUser):
    return _message_out(rules.post_message(db, chat_id, content=data.content, sender=me))


# -----------------------
# Offers
# -----------------------
@app.post("/api/offers", status_code=201)
def create_offer(data: OfferCreateIn, db: DB, me: CurrentUser):
    offer = rules.make_offer(
        db,
        listing_id=data.listing_id,
        amount=data.amount,
        currency=data.currency,
        message=data.message,
        buyer=me,
    )
    return _offer_out(offer)


@app.post("/api/offers/{offer_id:int}/respond")
def respond_offer(offer_id: int, data: OfferRespondIn, db: DB, me: CurrentUser):
    return _offer_out(rules.respond_to_offer(db, offer_id, status=data.status, user=me))
