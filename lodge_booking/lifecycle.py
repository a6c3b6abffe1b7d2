"""
Booking Lifecycle
=================

Legal status transitions of a booking and their side effects.

    pending ----> confirmed ----> checked_in ----> checked_out
       |              |
       +--> cancelled <+
       +--> no_show   <+

``checked_out``, ``cancelled`` and ``no_show`` are terminal. Moving into
``cancelled`` gives the booking's inventory back. The status write is
conditional on the status that was read, so two concurrent cancellations
cannot both restore inventory.

Two entry points:
- ``update_status``: admin-only move to any legal target status.
- ``cancel_booking``: owner (or admin) cancellation, allowed only from
  ``pending``/``confirmed`` and only while check-in is far enough away.
  Creates a pending refund record when the booking has a completed payment.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Callable, Dict, FrozenSet, Optional, Union
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .availability import stay_nights
from .cache import Cache, invalidate_booking_entries
from .database import Database
from .errors import (
    AccessDenied,
    BookingNotFound,
    CancellationNotAllowed,
    InvalidStatus,
    InvalidStatusTransition,
)
from .inventory import release_units
from .metrics import BOOKING_CANCELLATIONS, BOOKING_TRANSITIONS
from .models import (
    Booking,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentStatus,
    PaymentType,
    utcnow,
)
from .notifications import Notifier, notify_quietly
from .schemas import Actor

logger = structlog.get_logger(__name__)


TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.CHECKED_IN,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.CHECKED_IN: frozenset({BookingStatus.CHECKED_OUT}),
    BookingStatus.CHECKED_OUT: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

USER_CANCELLABLE = frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED})

# Timestamp column stamped when a booking enters the status
STATUS_TIMESTAMPS = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.CHECKED_IN: "checked_in_at",
    BookingStatus.CHECKED_OUT: "checked_out_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def parse_status(value: Union[str, BookingStatus]) -> BookingStatus:
    """
    Raises:
        InvalidStatus: If ``value`` is not one of the booking statuses.
    """
    try:
        return BookingStatus(value)
    except ValueError:
        raise InvalidStatus(str(value)) from None


def is_terminal(status: BookingStatus) -> bool:
    return not TRANSITIONS[status]


def ensure_transition(booking_id: UUID, current: BookingStatus, target: BookingStatus) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidStatusTransition(booking_id, current.value, target.value)


def hours_until_check_in(check_in: date, now: datetime) -> float:
    """Hours from ``now`` until midnight UTC at the start of the check-in date."""
    starts_at = datetime.combine(check_in, time.min, tzinfo=timezone.utc)
    return (starts_at - now).total_seconds() / 3600


@dataclass
class TransitionRecord:
    """What changed in a committed transition, used for post-commit effects."""
    booking_id: UUID
    user_id: UUID
    accommodation_id: UUID
    confirmation_code: str
    from_status: BookingStatus
    to_status: BookingStatus
    refund_payment_id: Optional[UUID] = None


class BookingLifecycle:
    def __init__(
        self,
        database: Database,
        cache: Cache,
        notifier: Notifier,
        cancellation_window_hours: int = 24,
        clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.cache = cache
        self.notifier = notifier
        self.cancellation_window_hours = cancellation_window_hours
        self.clock = clock

    # =========================================================================
    # ADMIN STATUS UPDATE
    # =========================================================================

    async def update_status(
        self,
        actor: Actor,
        booking_id: UUID,
        status: Union[str, BookingStatus]
    ) -> Booking:
        """
        Move a booking to ``status``.

        Raises:
            AccessDenied: If the actor is not an admin.
            InvalidStatus: If ``status`` is not a booking status.
            BookingNotFound: If the booking does not exist.
            InvalidStatusTransition: If the move is not allowed from the
                booking's current status.
        """
        if not actor.is_admin:
            raise AccessDenied(booking_id, actor.user_id)
        target = parse_status(status)

        async with self.database.transaction() as session:
            booking = await self._load(session, booking_id)
            record = await self.apply_transition(session, booking, target, actor.user_id)

        await self.announce(record)
        return booking

    # =========================================================================
    # USER CANCELLATION
    # =========================================================================

    async def cancel_booking(
        self,
        actor: Actor,
        booking_id: UUID,
        reason: Optional[str] = None
    ) -> Booking:
        """
        Cancel a booking on behalf of its owner.

        Raises:
            BookingNotFound: If the booking does not exist.
            AccessDenied: If the actor neither owns the booking nor is an admin.
            CancellationNotAllowed: If the booking is past ``confirmed`` or
                check-in is inside the cancellation window.
        """
        try:
            async with self.database.transaction() as session:
                booking = await self._load(session, booking_id)
                if not actor.is_admin and booking.user_id != actor.user_id:
                    raise AccessDenied(booking_id, actor.user_id)

                current = BookingStatus(booking.status)
                if current not in USER_CANCELLABLE:
                    raise CancellationNotAllowed(
                        booking_id,
                        f"booking is {current.value}",
                        status=current.value
                    )

                hours = hours_until_check_in(booking.check_in_date, self.clock())
                if hours < self.cancellation_window_hours:
                    raise CancellationNotAllowed(
                        booking_id,
                        f"check-in is less than {self.cancellation_window_hours} hours away",
                        status=current.value,
                        hours_until_check_in=round(hours, 2)
                    )

                record = await self.apply_transition(
                    session, booking, BookingStatus.CANCELLED, actor.user_id, reason
                )
                refund = self.create_refund_record(booking, reason)
                if refund is not None:
                    record.refund_payment_id = refund.id
        except CancellationNotAllowed as e:
            BOOKING_CANCELLATIONS.labels(result="rejected").inc()
            logger.info(
                "Cancellation rejected",
                booking_id=str(booking_id),
                reason=e.reason,
                hours_until_check_in=e.hours_until_check_in
            )
            raise

        BOOKING_CANCELLATIONS.labels(result="cancelled").inc()
        await self.announce(record)
        return booking

    def create_refund_record(
        self,
        booking: Booking,
        reason: Optional[str],
        completed: Optional[Payment] = None
    ) -> Optional[Payment]:
        """Queue a pending refund of ``completed``, or of the booking's completed payment."""
        completed = completed or next(
            (
                payment for payment in booking.payments
                if payment.type == PaymentType.PAYMENT.value
                and payment.status == PaymentStatus.COMPLETED.value
            ),
            None,
        )
        if completed is None:
            return None

        refund = Payment(
            id=uuid4(),
            user_id=booking.user_id,
            type=PaymentType.REFUND.value,
            status=PaymentStatus.PENDING.value,
            provider=completed.provider,
            original_payment_id=completed.id,
            amount=completed.amount,
            currency=completed.currency,
            reason=reason or "Booking cancelled",
        )
        booking.payments.append(refund)

        logger.info(
            "Refund record created",
            booking_id=str(booking.id),
            original_payment_id=str(completed.id),
            refund_payment_id=str(refund.id),
            amount=str(completed.amount)
        )
        return refund

    # =========================================================================
    # TRANSITION CORE
    # =========================================================================

    async def apply_transition(
        self,
        session: AsyncSession,
        booking: Booking,
        target: BookingStatus,
        actor_id: Optional[UUID],
        reason: Optional[str] = None
    ) -> TransitionRecord:
        """
        Write a status change inside the caller's transaction.

        Raises:
            InvalidStatusTransition: If the move is not allowed, including when
                another writer changed the status after it was read.
        """
        current = BookingStatus(booking.status)
        ensure_transition(booking.id, current, target)

        now = self.clock()
        values = {"status": target.value, "updated_at": now}
        if target in STATUS_TIMESTAMPS:
            values[STATUS_TIMESTAMPS[target]] = now
        if target == BookingStatus.CANCELLED:
            values["cancellation_reason"] = reason

        result = await session.execute(
            update(Booking)
            .where(and_(Booking.id == booking.id, Booking.status == current.value))
            .values(**values)
        )
        if result.rowcount == 0:
            latest = await session.scalar(select(Booking.status).where(Booking.id == booking.id))
            raise InvalidStatusTransition(booking.id, latest or current.value, target.value)

        if target == BookingStatus.CANCELLED:
            nights = stay_nights(booking.check_in_date, booking.check_out_date)
            await release_units(session, booking.items, nights)

        await record_audit(
            session,
            actor_id,
            "booking_cancelled" if target == BookingStatus.CANCELLED else "booking_status_updated",
            "booking",
            booking.id,
            old_data={"status": current.value},
            new_data={"status": target.value, "reason": reason},
        )

        return TransitionRecord(
            booking_id=booking.id,
            user_id=booking.user_id,
            accommodation_id=booking.accommodation_id,
            confirmation_code=booking.confirmation_code,
            from_status=current,
            to_status=target,
        )

    async def announce(self, record: TransitionRecord) -> None:
        """Post-commit effects of a transition: metrics, cache, notification."""
        BOOKING_TRANSITIONS.labels(
            from_status=record.from_status.value,
            to_status=record.to_status.value
        ).inc()
        logger.info(
            "Booking status changed",
            booking_id=str(record.booking_id),
            from_status=record.from_status.value,
            to_status=record.to_status.value
        )

        await invalidate_booking_entries(
            self.cache,
            record.booking_id,
            record.user_id,
            record.accommodation_id if record.to_status == BookingStatus.CANCELLED else None,
        )

        if record.to_status == BookingStatus.CANCELLED:
            notification_type = NotificationType.BOOKING_CANCELLED
            message = f"Your booking {record.confirmation_code} has been cancelled."
            if record.refund_payment_id is not None:
                message += " A refund has been requested."
        else:
            notification_type = NotificationType.BOOKING_STATUS_CHANGE
            message = (
                f"Your booking {record.confirmation_code} is now "
                f"{record.to_status.value.replace('_', ' ')}."
            )

        await notify_quietly(
            self.notifier,
            record.user_id,
            notification_type,
            message,
            data={
                "booking_id": str(record.booking_id),
                "from_status": record.from_status.value,
                "to_status": record.to_status.value,
            },
            booking_id=record.booking_id,
        )

    async def _load(self, session: AsyncSession, booking_id: UUID) -> Booking:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking
