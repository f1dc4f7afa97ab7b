from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelIn(BaseModel):
    # The web client speaks camelCase JSON; snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Currency = Literal["PYG", "USD"]
OwnerType = Literal["owner", "commission_agent", "other"]
TitleStatus = Literal["has_title", "no_title"]
PaymentCondition = Literal["cash_only", "installments", "barter"]
ListingStatus = Literal["pending", "active", "rejected", "archived"]
SortBy = Literal["newest", "price_asc", "price_desc", "az"]


# -----------------------
# Auth
# -----------------------
class RegisterIn(_CamelIn):
    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    role: Literal["user", "admin"] = "user"


class LoginIn(_CamelIn):
    username: str
    password: str


# -----------------------
# Listings
# -----------------------
class ListingCreateIn(_CamelIn):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    currency: Currency
    price: float = Field(gt=0)

    department: str
    city: str
    zone: str
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    google_maps_link: str | None = None

    land_size: float = Field(gt=0)
    dimensions: str = Field(min_length=1)

    owner_name: str = Field(min_length=1)
    owner_type: OwnerType
    title_status: TitleStatus

    phone: str = Field(min_length=1)
    email: str | None = None

    payment_condition: PaymentCondition
    down_payment: float | None = Field(default=None, ge=0)
    barter_description: str | None = None


class ListingUpdateIn(_CamelIn):
    """
    Partial update for owner/admin editing an existing listing.
    Only provided fields are updated.
    """

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    currency: Currency | None = None
    price: float | None = Field(default=None, gt=0)
    department: str | None = None
    city: str | None = None
    zone: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    google_maps_link: str | None = None
    land_size: float | None = Field(default=None, gt=0)
    dimensions: str | None = None
    owner_name: str | None = None
    owner_type: OwnerType | None = None
    title_status: TitleStatus | None = None
    phone: str | None = None
    email: str | None = None
    payment_condition: PaymentCondition | None = None
    down_payment: float | None = Field(default=None, ge=0)
    barter_description: str | None = None
    status: ListingStatus | None = None
    featured: bool | None = None


class ListingFilters(BaseModel):
    search: str | None = None
    department: str | None = None
    city: str | None = None
    zone: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    currency: Currency | None = None
    min_size: float | None = None
    max_size: float | None = None
    owner_type: OwnerType | None = None
    owner_name: str | None = None
    title_status: TitleStatus | None = None
    payment_condition: PaymentCondition | None = None
    sort_by: SortBy | None = None
    status: ListingStatus | None = None
    user_id: int | None = None
    limit: int | None = Field(default=None, ge=1, le=500)


# -----------------------
# Admin
# -----------------------
class AssignPlanIn(_CamelIn):
    plan_type: str = Field(min_length=1)
    duration_days: int = Field(ge=1)
    max_listings: int = Field(ge=-1)


class ModerateIn(_CamelIn):
    action: Literal["approve", "reject"]
    reason: str | None = None


# -----------------------
# Chats / offers / feedback
# -----------------------
class ChatCreateIn(_CamelIn):
    listing_id: int


class MessageIn(_CamelIn):
    content: str


class OfferCreateIn(_CamelIn):
    listing_id: int
    amount: float = Field(gt=0)
    currency: Currency
    message: str | None = None


class OfferRespondIn(_CamelIn):
    status: Literal["accepted", "rejected"]


class CommentIn(_CamelIn):
    content: str


class RatingIn(_CamelIn):
    rating: int = Field(ge=1, le=5)
