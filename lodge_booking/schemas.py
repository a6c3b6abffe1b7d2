"""
Request / Response Schemas
==========================

Pydantic models passed into and returned from the booking services. Read
models are built from ORM rows (``from_attributes``) and round-trip through
JSON so they can be cached.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import (
    BookingPaymentStatus,
    BookingStatus,
    PaymentProviderName,
    PaymentStatus,
    PaymentType,
    UserRole,
)


@dataclass(frozen=True)
class Actor:
    """The user on whose behalf an operation runs."""
    user_id: UUID
    role: UserRole = UserRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


# =============================================================================
# BOOKING REQUESTS
# =============================================================================

class RoomRequest(BaseModel):
    room_id: UUID
    quantity: int = Field(default=1, ge=1)


class BookingCreateRequest(BaseModel):
    accommodation_id: UUID
    check_in: date
    check_out: date
    guest_count: int = Field(ge=1)
    rooms: list[RoomRequest] = Field(min_length=1)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("rooms")
    @classmethod
    def rooms_are_distinct(cls, v: list[RoomRequest]) -> list[RoomRequest]:
        room_ids = [room.room_id for room in v]
        if len(room_ids) != len(set(room_ids)):
            raise ValueError("Each room may be requested only once")
        return v


class BookingUpdateRequest(BaseModel):
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    guest_count: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @property
    def changes_dates(self) -> bool:
        return self.check_in is not None or self.check_out is not None


class BookingSortField(str, Enum):
    CREATED_AT = "created_at"
    CHECK_IN_DATE = "check_in_date"
    CHECK_OUT_DATE = "check_out_date"
    TOTAL_AMOUNT = "total_amount"
    STATUS = "status"


class BookingFilters(BaseModel):
    status: Optional[BookingStatus] = None
    sort_by: BookingSortField = BookingSortField.CREATED_AT
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


# =============================================================================
# BOOKING RESPONSES
# =============================================================================

class BookingItemView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    room_id: UUID
    room_name: str
    quantity: int
    price_per_night: Decimal
    unit_price: Decimal
    total_price: Decimal


class PaymentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: PaymentType
    status: PaymentStatus
    provider: PaymentProviderName
    provider_reference: Optional[str] = None
    original_payment_id: Optional[UUID] = None
    amount: Decimal
    currency: str
    created_at: datetime
    processed_at: Optional[datetime] = None


class BookingSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    accommodation_id: UUID
    confirmation_code: str
    status: BookingStatus
    payment_status: BookingPaymentStatus
    total_amount: Decimal
    currency: str
    check_in_date: date
    check_out_date: date
    nights: int
    guest_count: int
    created_at: datetime


class BookingDetails(BookingSummary):
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None
    items: list[BookingItemView] = []
    payments: list[PaymentView] = []


class PaginationInfo(BaseModel):
    total: int
    page: int
    pages: int
    limit: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "PaginationInfo":
        pages = (total + limit - 1) // limit
        return cls(
            total=total,
            page=page,
            pages=pages,
            limit=limit,
            has_next=page < pages,
            has_prev=page > 1,
        )


class BookingListResponse(BaseModel):
    bookings: list[BookingSummary]
    pagination: PaginationInfo


# =============================================================================
# AVAILABILITY & ACCOMMODATIONS
# =============================================================================

class RoomAvailabilityView(BaseModel):
    room_id: UUID
    name: str
    type: str
    max_occupancy: int
    price_per_night: Decimal
    currency: str
    available_units: int
    stay_price: Decimal


class AvailabilityResult(BaseModel):
    accommodation_id: UUID
    check_in: date
    check_out: date
    nights: int
    rooms: list[RoomAvailabilityView]

    @property
    def available(self) -> bool:
        return any(room.available_units > 0 for room in self.rooms)


class AccommodationSortField(str, Enum):
    NAME = "name"
    STAR_RATING = "star_rating"
    CREATED_AT = "created_at"


class AccommodationFilters(BaseModel):
    city: Optional[str] = None
    country: Optional[str] = None
    min_price: Optional[Decimal] = Field(default=None, ge=0)
    max_price: Optional[Decimal] = Field(default=None, ge=0)
    guests: Optional[int] = Field(default=None, ge=1)
    min_star_rating: Optional[int] = Field(default=None, ge=1, le=5)
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    sort_by: AccommodationSortField = AccommodationSortField.NAME
    sort_order: Literal["asc", "desc"] = "asc"
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @field_validator("check_out")
    @classmethod
    def check_out_after_check_in(cls, v: Optional[date], info) -> Optional[date]:
        check_in = info.data.get("check_in")
        if v and check_in and v <= check_in:
            raise ValueError("Check-out must be after check-in")
        return v

    @model_validator(mode="after")
    def both_dates_or_neither(self) -> "AccommodationFilters":
        if (self.check_in is None) != (self.check_out is None):
            raise ValueError("check_in and check_out must be given together")
        return self

    @property
    def has_dates(self) -> bool:
        return self.check_in is not None and self.check_out is not None


class AccommodationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    city: str
    country: str
    star_rating: Optional[int] = None
    min_price: Optional[Decimal] = None
    currency: Optional[str] = None


class AccommodationSearchResponse(BaseModel):
    accommodations: list[AccommodationSummary]
    pagination: PaginationInfo


class RoomInput(BaseModel):
    """A room to add, or with ``id``, changes to an existing room."""
    id: Optional[UUID] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[str] = Field(default=None, max_length=100)
    max_occupancy: Optional[int] = Field(default=None, ge=1)
    base_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    default_units: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def new_room_is_complete(self) -> "RoomInput":
        if self.id is None and (self.name is None or self.base_price is None):
            raise ValueError("A new room needs a name and a base_price")
        return self


class AccommodationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    address: Optional[str] = Field(default=None, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    country: str = Field(..., min_length=1, max_length=100)
    star_rating: Optional[int] = Field(default=None, ge=1, le=5)
    rooms: list[RoomInput] = Field(default_factory=list)

    @field_validator("rooms")
    @classmethod
    def rooms_are_new(cls, v: list[RoomInput]) -> list[RoomInput]:
        if any(room.id is not None for room in v):
            raise ValueError("Rooms of a new accommodation cannot carry an id")
        return v


class AccommodationUpdateRequest(BaseModel):
    """Fields left as None are unchanged; listed rooms are added or updated."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, min_length=1, max_length=100)
    country: Optional[str] = Field(default=None, min_length=1, max_length=100)
    star_rating: Optional[int] = Field(default=None, ge=1, le=5)
    rooms: list[RoomInput] = Field(default_factory=list)


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentIntentRequest(BaseModel):
    booking_id: UUID
    provider: PaymentProviderName
    return_url: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    payment_id: UUID
    provider: PaymentProviderName
    provider_reference: str
    amount: Decimal
    currency: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: UUID
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)
