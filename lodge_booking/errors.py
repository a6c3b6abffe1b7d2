"""
Booking Errors
==============

Domain error taxonomy. Every error carries the HTTP status a boundary layer
should answer with, a stable machine code, and enough context (booking id,
room id, requested vs. available quantity) to build a user-facing message.
"""

from datetime import date
from typing import Iterable, Optional
from uuid import UUID


class BookingError(Exception):
    """Base exception for booking core errors."""

    status_code: int = 400
    code: str = "booking_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# =============================================================================
# VALIDATION
# =============================================================================

class InvalidDateRange(BookingError):
    """Raised when a stay has no nights (check-out on or before check-in)."""

    code = "invalid_date_range"

    def __init__(self, check_in: date, check_out: date):
        self.check_in = check_in
        self.check_out = check_out
        super().__init__(
            f"Invalid date range: check-out {check_out.isoformat()} must be "
            f"after check-in {check_in.isoformat()}"
        )


class AccommodationNotFound(BookingError):
    status_code = 404
    code = "accommodation_not_found"

    def __init__(self, accommodation_id: UUID):
        self.accommodation_id = accommodation_id
        super().__init__(f"Accommodation {accommodation_id} not found or inactive")


class RoomNotFound(BookingError):
    """Raised when requested rooms do not exist in the target accommodation."""

    status_code = 404
    code = "room_not_found"

    def __init__(self, room_ids: Iterable[UUID], accommodation_id: Optional[UUID] = None):
        self.room_ids = list(room_ids)
        self.accommodation_id = accommodation_id
        missing = ", ".join(str(room_id) for room_id in self.room_ids)
        super().__init__(f"One or more rooms not found: {missing}")


# =============================================================================
# CAPACITY & CONCURRENCY
# =============================================================================

class InsufficientAvailability(BookingError):
    status_code = 409
    code = "insufficient_availability"

    def __init__(
        self,
        room_id: UUID,
        requested: int,
        available: int,
        room_name: Optional[str] = None,
        night: Optional[date] = None
    ):
        self.room_id = room_id
        self.requested = requested
        self.available = available
        self.room_name = room_name
        self.night = night
        label = room_name or str(room_id)
        super().__init__(
            f"Insufficient availability for {label}. "
            f"Available: {available}, Requested: {requested}"
        )


class LockTimeout(BookingError):
    """Raised when a lock could not be acquired in time. Safe to retry."""

    status_code = 409
    code = "lock_timeout"

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(
            f"Another booking is being processed for these dates "
            f"(lock {key} not acquired within {timeout:.1f}s). Please try again."
        )


# =============================================================================
# BOOKING ACCESS & LIFECYCLE
# =============================================================================

class BookingNotFound(BookingError):
    status_code = 404
    code = "booking_not_found"

    def __init__(self, booking_id: UUID):
        self.booking_id = booking_id
        super().__init__(f"Booking {booking_id} not found")


class AccessDenied(BookingError):
    status_code = 403
    code = "access_denied"

    def __init__(self, resource_id: UUID, user_id: UUID):
        self.resource_id = resource_id
        self.user_id = user_id
        super().__init__(f"User {user_id} may not access {resource_id}")


class InvalidStatus(BookingError):
    code = "invalid_status"

    def __init__(self, value: str, message: Optional[str] = None):
        self.value = value
        super().__init__(message or f"Invalid booking status: {value!r}")


class InvalidStatusTransition(InvalidStatus):
    code = "invalid_status_transition"

    def __init__(self, booking_id: UUID, current: str, target: str):
        self.booking_id = booking_id
        self.current = current
        self.target = target
        super().__init__(
            target,
            f"Booking {booking_id} cannot move from {current} to {target}"
        )


class CancellationNotAllowed(BookingError):
    code = "cancellation_not_allowed"

    def __init__(
        self,
        booking_id: UUID,
        reason: str,
        status: Optional[str] = None,
        hours_until_check_in: Optional[float] = None
    ):
        self.booking_id = booking_id
        self.reason = reason
        self.status = status
        self.hours_until_check_in = hours_until_check_in
        super().__init__(f"Booking {booking_id} cannot be cancelled: {reason}")


class UpdateNotAllowed(BookingError):
    code = "update_not_allowed"

    def __init__(self, booking_id: UUID, reason: str):
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"Booking {booking_id} cannot be updated: {reason}")


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentNotPayable(BookingError):
    code = "payment_not_payable"

    def __init__(self, booking_id: UUID, status: str):
        self.booking_id = booking_id
        self.status = status
        super().__init__(f"Booking {booking_id} is not in a payable state ({status})")


class PaymentNotFound(BookingError):
    status_code = 404
    code = "payment_not_found"

    def __init__(self, payment_id):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} not found")


class RefundNotAllowed(BookingError):
    code = "refund_not_allowed"

    def __init__(self, payment_id: UUID, reason: str):
        self.payment_id = payment_id
        self.reason = reason
        super().__init__(f"Payment {payment_id} cannot be refunded: {reason}")


class UnsupportedPaymentProvider(BookingError):
    code = "unsupported_payment_provider"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported payment provider: {provider}")


class WebhookSignatureError(BookingError):
    code = "invalid_webhook_signature"

    def __init__(self, provider: str, detail: str = "signature verification failed"):
        self.provider = provider
        super().__init__(f"{provider} webhook rejected: {detail}")


class PaymentProviderError(BookingError):
    """Raised when a payment provider API call fails."""

    status_code = 502
    code = "payment_provider_error"

    def __init__(
        self,
        provider: str,
        message: str,
        provider_status: Optional[int] = None,
        response_body: Optional[str] = None
    ):
        self.provider = provider
        self.provider_status = provider_status
        self.response_body = response_body
        super().__init__(f"{provider}: {message}")
