"""
Database Models
===============

SQLAlchemy ORM models for the booking core.

Inventory is sparse: a ``room_inventory`` row exists only for (room, date)
pairs whose capacity has been touched by a booking or an admin override.
A missing row means "the room's default unit count, fully available".
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class BookingPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class PaymentProviderName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    FLUTTERWAVE = "flutterwave"


class NotificationType(str, Enum):
    BOOKING_CONFIRMATION = "booking_confirmation"
    BOOKING_STATUS_CHANGE = "booking_status_change"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_UPDATED = "booking_updated"
    CHECKIN_REMINDER = "checkin_reminder"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILURE = "payment_failure"
    REFUND_PROCESSED = "refund_processed"


# =============================================================================
# USERS & ACCOMMODATIONS
# =============================================================================

class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.USER.value)
    is_active = Column(Boolean, nullable=False, default=True)


class Accommodation(Base, TimestampMixin):
    """A property offering rooms. Never hard-deleted; see ``is_active``."""

    __tablename__ = "accommodations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    owner_id = Column(Uuid, ForeignKey("users.id"), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    address = Column(String(500), nullable=True)
    city = Column(String(100), nullable=False, index=True)
    country = Column(String(100), nullable=False, index=True)
    star_rating = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    rooms = relationship("Room", back_populates="accommodation", lazy="selectin")


class Room(Base, TimestampMixin):
    __tablename__ = "rooms"

    id = Column(Uuid, primary_key=True, default=uuid4)
    accommodation_id = Column(Uuid, ForeignKey("accommodations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(100), nullable=False, default="standard")
    max_occupancy = Column(Integer, nullable=False, default=2)
    base_price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="ZAR")
    # Physical units of this room type when no inventory row overrides a date
    default_units = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)

    accommodation = relationship("Accommodation", back_populates="rooms", lazy="raise")

    __table_args__ = (
        CheckConstraint("max_occupancy > 0", name="ck_rooms_max_occupancy"),
        CheckConstraint("base_price >= 0", name="ck_rooms_base_price"),
        CheckConstraint("default_units >= 0", name="ck_rooms_default_units"),
    )


class RoomInventory(Base, TimestampMixin):
    """Per-date capacity override for a room, created lazily."""

    __tablename__ = "room_inventory"

    id = Column(Uuid, primary_key=True, default=uuid4)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False)
    date = Column(Date, nullable=False)
    total_units = Column(Integer, nullable=False)
    available_units = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("room_id", "date", name="uq_room_inventory_room_date"),
        CheckConstraint("available_units >= 0", name="ck_room_inventory_available_min"),
        CheckConstraint("available_units <= total_units", name="ck_room_inventory_available_max"),
        Index("ix_room_inventory_room_date", "room_id", "date"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoomInventory room={self.room_id} {self.date} "
            f"{self.available_units}/{self.total_units}>"
        )


# =============================================================================
# BOOKINGS
# =============================================================================

class Booking(Base, TimestampMixin):
    """
    A user's reservation of one or more rooms for a half-open stay
    [check_in_date, check_out_date).
    """

    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    accommodation_id = Column(Uuid, ForeignKey("accommodations.id"), nullable=False, index=True)
    confirmation_code = Column(String(16), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=BookingPaymentStatus.PENDING.value)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    check_in_date = Column(Date, nullable=False)
    check_out_date = Column(Date, nullable=False)
    guest_count = Column(Integer, nullable=False)
    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    checked_out_at = Column(DateTime(timezone=True), nullable=True)
    # Day the last check-in reminder was sent
    reminder_sent_on = Column(Date, nullable=True)

    items = relationship(
        "BookingItem",
        back_populates="booking",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    payments = relationship(
        "Payment",
        back_populates="booking",
        lazy="selectin",
        order_by="Payment.created_at",
    )

    __table_args__ = (
        CheckConstraint("check_out_date > check_in_date", name="ck_bookings_dates"),
        CheckConstraint("guest_count > 0", name="ck_bookings_guest_count"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_amount"),
        Index("ix_bookings_accommodation_dates", "accommodation_id", "check_in_date", "check_out_date"),
        Index("ix_bookings_status", "status"),
    )

    @property
    def nights(self) -> int:
        return (self.check_out_date - self.check_in_date).days

    def __repr__(self) -> str:
        return (
            f"<Booking {self.confirmation_code} {self.check_in_date}..{self.check_out_date} "
            f"status={self.status}>"
        )


class BookingItem(Base):
    """
    One room line of a booking. Prices are snapshots taken when the booking
    was priced and are never re-read from the live room.
    """

    __tablename__ = "booking_items"

    id = Column(Uuid, primary_key=True, default=uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=False, index=True)
    room_id = Column(Uuid, ForeignKey("rooms.id"), nullable=False, index=True)
    room_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_night = Column(Numeric(10, 2), nullable=False)
    # price of one unit for the whole stay: price_per_night * nights
    unit_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    booking = relationship("Booking", back_populates="items", lazy="raise")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_booking_items_quantity"),
        CheckConstraint("unit_price >= 0", name="ck_booking_items_unit_price"),
    )

    @property
    def total_price(self) -> Decimal:
        return Decimal(self.quantity) * Decimal(self.unit_price)


# =============================================================================
# PAYMENTS
# =============================================================================

class Payment(Base, TimestampMixin):
    """
    A payment or refund attempt against a booking. Refunds are separate rows
    pointing at the original payment through ``original_payment_id``.
    """

    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, default=PaymentType.PAYMENT.value)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    provider = Column(String(50), nullable=False)
    provider_reference = Column(String(255), nullable=True)
    original_payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    provider_response = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("Booking", back_populates="payments", lazy="raise")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount"),
        CheckConstraint(
            "provider IN ('stripe', 'paypal', 'flutterwave')",
            name="ck_payments_provider"
        ),
        Index("ix_payments_provider_reference", "provider", "provider_reference"),
    )


# =============================================================================
# NOTIFICATIONS & AUDIT
# =============================================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id"), nullable=True, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    user_id = Column(Uuid, nullable=True)
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(Uuid, nullable=True, index=True)
    old_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
