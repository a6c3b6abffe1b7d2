"""
Booking Service
===============

Creates bookings atomically and serves booking reads.

Creation protocol:
1. Validate the stay (at least one night) before anything is written.
2. Hold the lock for (accommodation, check-in date); give up with
   ``LockTimeout`` after the configured wait.
3. In one store transaction: load the rooms, compute availability, reject
   the whole request if any room is short, price the stay, insert the
   booking and its items, and take the inventory for every night.
4. Commit, release the lock, then notify the user and drop cached
   availability for the accommodation.

Any failure in step 3 rolls the transaction back; nothing partial survives.
"""

import hashlib
import secrets
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .availability import AvailabilityEngine, RoomAvailability, stay_nights
from .cache import Cache, CachePrefix, invalidate_booking_entries
from .database import Database
from .errors import (
    AccessDenied,
    AccommodationNotFound,
    BookingError,
    BookingNotFound,
    InsufficientAvailability,
    LockTimeout,
    RoomNotFound,
    UpdateNotAllowed,
)
from .inventory import release_units, reserve_units
from .lifecycle import hours_until_check_in
from .locking import LockManager
from .metrics import BOOKING_CREATE_RESULTS
from .models import (
    Accommodation,
    Booking,
    BookingItem,
    BookingPaymentStatus,
    BookingStatus,
    NotificationType,
    Room,
    utcnow,
)
from .notifications import Notifier, notify_quietly
from .schemas import (
    Actor,
    AvailabilityResult,
    BookingCreateRequest,
    BookingDetails,
    BookingFilters,
    BookingListResponse,
    BookingSummary,
    BookingUpdateRequest,
    PaginationInfo,
    RoomAvailabilityView,
)

logger = structlog.get_logger(__name__)

CONFIRMATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CONFIRMATION_LENGTH = 8
CENT = Decimal("0.01")


def booking_lock_key(accommodation_id: UUID, check_in: date) -> str:
    return f"booking:create:{accommodation_id}:{check_in.isoformat()}"


def generate_confirmation_code() -> str:
    return "".join(secrets.choice(CONFIRMATION_ALPHABET) for _ in range(CONFIRMATION_LENGTH))


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class BookingService:
    def __init__(
        self,
        database: Database,
        locks: LockManager,
        cache: Cache,
        notifier: Notifier,
        engine: Optional[AvailabilityEngine] = None,
        lock_timeout: float = 15.0,
        currency: str = "ZAR",
        cancellation_window_hours: int = 24,
        booking_cache_ttl: int = 300,
        availability_cache_ttl: int = 60,
        clock: Callable[[], datetime] = utcnow
    ):
        self.database = database
        self.locks = locks
        self.cache = cache
        self.notifier = notifier
        self.engine = engine or AvailabilityEngine()
        self.lock_timeout = lock_timeout
        self.currency = currency
        self.cancellation_window_hours = cancellation_window_hours
        self.booking_cache_ttl = booking_cache_ttl
        self.availability_cache_ttl = availability_cache_ttl
        self.clock = clock

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_booking(self, user_id: UUID, request: BookingCreateRequest) -> Booking:
        """
        Reserve rooms for a stay.

        Returns:
            The committed booking, status ``pending``, with its items loaded

        Raises:
            InvalidDateRange: If check-out is not after check-in.
            AccommodationNotFound: If the accommodation is missing or inactive.
            RoomNotFound: If a room does not belong to the accommodation.
            InsufficientAvailability: If any room lacks capacity on any night.
            LockTimeout: If the booking lock could not be acquired in time.
        """
        log = logger.bind(
            user_id=str(user_id),
            accommodation_id=str(request.accommodation_id),
            check_in=request.check_in.isoformat(),
            check_out=request.check_out.isoformat()
        )

        try:
            nights = stay_nights(request.check_in, request.check_out)
            key = booking_lock_key(request.accommodation_id, request.check_in)
            async with self.locks.hold(key, self.lock_timeout):
                booking = await self._create_locked(user_id, request, nights)
        except InsufficientAvailability as e:
            BOOKING_CREATE_RESULTS.labels(result="unavailable").inc()
            log.info(
                "Booking rejected: insufficient availability",
                room_id=str(e.room_id),
                requested=e.requested,
                available=e.available
            )
            raise
        except LockTimeout:
            BOOKING_CREATE_RESULTS.labels(result="lock_timeout").inc()
            raise
        except BookingError as e:
            BOOKING_CREATE_RESULTS.labels(result="invalid").inc()
            log.info("Booking rejected", code=e.code, error=e.message)
            raise
        except Exception:
            BOOKING_CREATE_RESULTS.labels(result="error").inc()
            log.exception("Booking creation failed")
            raise

        BOOKING_CREATE_RESULTS.labels(result="created").inc()
        log.info(
            "Booking created",
            booking_id=str(booking.id),
            confirmation_code=booking.confirmation_code,
            total_amount=str(booking.total_amount)
        )

        await invalidate_booking_entries(
            self.cache, booking.id, user_id, booking.accommodation_id
        )
        await notify_quietly(
            self.notifier,
            user_id,
            NotificationType.BOOKING_CONFIRMATION,
            f"Your booking {booking.confirmation_code} for "
            f"{booking.check_in_date.isoformat()} to {booking.check_out_date.isoformat()} "
            f"has been received.",
            data={
                "booking_id": str(booking.id),
                "confirmation_code": booking.confirmation_code,
                "total_amount": str(booking.total_amount),
                "currency": booking.currency,
            },
            booking_id=booking.id,
        )
        return booking

    async def _create_locked(
        self,
        user_id: UUID,
        request: BookingCreateRequest,
        nights: List[date]
    ) -> Booking:
        async with self.database.transaction() as session:
            accommodation = await session.get(Accommodation, request.accommodation_id)
            if accommodation is None or not accommodation.is_active:
                raise AccommodationNotFound(request.accommodation_id)

            rooms = await self._load_rooms(
                session,
                request.accommodation_id,
                [room_request.room_id for room_request in request.rooms]
            )
            availability = await self.engine.compute(
                session, list(rooms.values()), request.check_in, request.check_out
            )

            # All rooms are checked before anything is written
            for room_request in request.rooms:
                room_availability = availability[room_request.room_id]
                if not room_availability.admits(room_request.quantity):
                    raise InsufficientAvailability(
                        room_request.room_id,
                        room_request.quantity,
                        room_availability.minimum_available,
                        room_name=rooms[room_request.room_id].name,
                        night=room_availability.tightest_night
                    )

            items = []
            for room_request in request.rooms:
                room = rooms[room_request.room_id]
                price_per_night = money(room.base_price)
                items.append(BookingItem(
                    id=uuid4(),
                    room_id=room.id,
                    room_name=room.name,
                    quantity=room_request.quantity,
                    price_per_night=price_per_night,
                    unit_price=money(price_per_night * len(nights)),
                ))

            booking = Booking(
                id=uuid4(),
                user_id=user_id,
                accommodation_id=request.accommodation_id,
                confirmation_code=generate_confirmation_code(),
                status=BookingStatus.PENDING.value,
                payment_status=BookingPaymentStatus.PENDING.value,
                total_amount=money(sum((item.total_price for item in items), Decimal("0"))),
                currency=self.currency,
                check_in_date=request.check_in,
                check_out_date=request.check_out,
                guest_count=request.guest_count,
                notes=request.notes,
            )
            booking.items = items
            booking.payments = []
            session.add(booking)
            await session.flush()

            for room_request in request.rooms:
                await reserve_units(
                    session,
                    rooms[room_request.room_id],
                    room_request.quantity,
                    nights,
                    availability[room_request.room_id],
                )

            await record_audit(
                session,
                user_id,
                "booking_created",
                "booking",
                booking.id,
                new_data={
                    "status": booking.status,
                    "check_in": request.check_in.isoformat(),
                    "check_out": request.check_out.isoformat(),
                    "rooms": {str(r.room_id): r.quantity for r in request.rooms},
                    "total_amount": str(booking.total_amount),
                },
            )

        return booking

    async def _load_rooms(
        self,
        session: AsyncSession,
        accommodation_id: UUID,
        room_ids: Sequence[UUID]
    ) -> Dict[UUID, Room]:
        result = await session.execute(
            select(Room).where(
                and_(
                    Room.id.in_(room_ids),
                    Room.accommodation_id == accommodation_id,
                    Room.is_active == True,  # noqa: E712
                )
            )
        )
        rooms = {room.id: room for room in result.scalars().all()}
        missing = [room_id for room_id in room_ids if room_id not in rooms]
        if missing:
            raise RoomNotFound(missing, accommodation_id)
        return rooms

    # =========================================================================
    # READS
    # =========================================================================

    async def get_booking(self, actor: Actor, booking_id: UUID) -> BookingDetails:
        """
        Raises:
            BookingNotFound: If the booking does not exist.
            AccessDenied: If the actor neither owns the booking nor is an admin.
        """
        key = CachePrefix.booking(booking_id)
        cached = await self.cache.get(key)
        if cached is not None:
            details = BookingDetails.model_validate(cached)
        else:
            async with self.database.session() as session:
                booking = await session.get(Booking, booking_id)
                if booking is None:
                    raise BookingNotFound(booking_id)
                details = BookingDetails.model_validate(booking)
            await self.cache.set(key, details.model_dump(mode="json"), self.booking_cache_ttl)

        if not actor.is_admin and details.user_id != actor.user_id:
            raise AccessDenied(booking_id, actor.user_id)
        return details

    async def list_user_bookings(
        self,
        user_id: UUID,
        filters: Optional[BookingFilters] = None
    ) -> BookingListResponse:
        filters = filters or BookingFilters()
        fingerprint = hashlib.sha1(filters.model_dump_json().encode()).hexdigest()[:16]
        key = f"{CachePrefix.user_bookings(user_id)}{fingerprint}"

        cached = await self.cache.get(key)
        if cached is not None:
            return BookingListResponse.model_validate(cached)

        query = select(Booking).where(Booking.user_id == user_id)
        if filters.status is not None:
            query = query.where(Booking.status == filters.status.value)

        sort_column = getattr(Booking, filters.sort_by.value)
        order = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()

        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(query.subquery())
            ) or 0
            result = await session.execute(
                query.order_by(order, Booking.id)
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            bookings = [BookingSummary.model_validate(b) for b in result.scalars().all()]

        response = BookingListResponse(
            bookings=bookings,
            pagination=PaginationInfo.build(total, filters.page, filters.limit),
        )
        await self.cache.set(key, response.model_dump(mode="json"), self.booking_cache_ttl)
        return response

    async def check_availability(
        self,
        accommodation_id: UUID,
        check_in: date,
        check_out: date
    ) -> AvailabilityResult:
        """
        Spare units per active room of an accommodation for a stay.

        Raises:
            InvalidDateRange: If check-out is not after check-in.
            AccommodationNotFound: If the accommodation is missing or inactive.
        """
        nights = stay_nights(check_in, check_out)
        key = f"{CachePrefix.availability(accommodation_id)}{check_in.isoformat()}:{check_out.isoformat()}"
        cached = await self.cache.get(key)
        if cached is not None:
            return AvailabilityResult.model_validate(cached)

        async with self.database.session() as session:
            accommodation = await session.get(Accommodation, accommodation_id)
            if accommodation is None or not accommodation.is_active:
                raise AccommodationNotFound(accommodation_id)

            rooms = [room for room in accommodation.rooms if room.is_active]
            availability = await self.engine.compute(session, rooms, check_in, check_out)

        result = AvailabilityResult(
            accommodation_id=accommodation_id,
            check_in=check_in,
            check_out=check_out,
            nights=len(nights),
            rooms=[
                RoomAvailabilityView(
                    room_id=room.id,
                    name=room.name,
                    type=room.type,
                    max_occupancy=room.max_occupancy,
                    price_per_night=money(room.base_price),
                    currency=room.currency,
                    available_units=availability[room.id].minimum_available,
                    stay_price=money(room.base_price * len(nights)),
                )
                for room in rooms
            ],
        )
        await self.cache.set(key, result.model_dump(mode="json"), self.availability_cache_ttl)
        return result

    # =========================================================================
    # UPDATE
    # =========================================================================

    async def update_booking(
        self,
        actor: Actor,
        booking_id: UUID,
        request: BookingUpdateRequest
    ) -> Booking:
        """
        Edit a pending booking's dates, guest count or notes.

        A date change gives back the old nights and takes the new ones in one
        transaction, under the lock for the new check-in date. Items keep
        their snapshotted nightly price and are re-priced for the new length.

        Raises:
            BookingNotFound, AccessDenied: As for ``get_booking``.
            UpdateNotAllowed: If the booking is not pending or check-in is
                inside the cancellation window.
            InvalidDateRange: If the new dates have no nights.
            InsufficientAvailability: If a room lacks capacity on a new night.
            LockTimeout: If the booking lock could not be acquired in time.
        """
        async with self.database.session() as session:
            current = await session.get(Booking, booking_id)
            if current is None:
                raise BookingNotFound(booking_id)
        self._ensure_updatable(actor, current)

        if request.changes_dates:
            check_in = request.check_in or current.check_in_date
            check_out = request.check_out or current.check_out_date
            nights = stay_nights(check_in, check_out)
            key = booking_lock_key(current.accommodation_id, check_in)
            async with self.locks.hold(key, self.lock_timeout):
                booking, old = await self._update_locked(
                    actor, booking_id, request, check_in, check_out, nights
                )
        else:
            booking, old = await self._update_locked(actor, booking_id, request)

        logger.info(
            "Booking updated",
            booking_id=str(booking_id),
            changed_dates=request.changes_dates,
            total_amount=str(booking.total_amount)
        )

        await invalidate_booking_entries(
            self.cache,
            booking.id,
            booking.user_id,
            booking.accommodation_id if request.changes_dates else None,
        )
        await notify_quietly(
            self.notifier,
            booking.user_id,
            NotificationType.BOOKING_UPDATED,
            f"Your booking {booking.confirmation_code} has been updated.",
            data={"booking_id": str(booking.id), "previous": old},
            booking_id=booking.id,
        )
        return booking

    def _ensure_updatable(self, actor: Actor, booking: Booking) -> None:
        if not actor.is_admin and booking.user_id != actor.user_id:
            raise AccessDenied(booking.id, actor.user_id)
        if booking.status != BookingStatus.PENDING.value:
            raise UpdateNotAllowed(booking.id, f"booking is {booking.status}")
        hours = hours_until_check_in(booking.check_in_date, self.clock())
        if hours < self.cancellation_window_hours:
            raise UpdateNotAllowed(
                booking.id,
                f"check-in is less than {self.cancellation_window_hours} hours away"
            )

    async def _update_locked(
        self,
        actor: Actor,
        booking_id: UUID,
        request: BookingUpdateRequest,
        check_in: Optional[date] = None,
        check_out: Optional[date] = None,
        nights: Optional[List[date]] = None
    ):
        async with self.database.transaction() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                raise BookingNotFound(booking_id)
            # Re-checked here: the booking may have moved on while we waited
            self._ensure_updatable(actor, booking)

            old = {
                "check_in": booking.check_in_date.isoformat(),
                "check_out": booking.check_out_date.isoformat(),
                "guest_count": booking.guest_count,
                "notes": booking.notes,
                "total_amount": str(booking.total_amount),
            }

            if nights is not None:
                await self._move_stay(session, booking, check_in, check_out, nights)
            if request.guest_count is not None:
                booking.guest_count = request.guest_count
            if request.notes is not None:
                booking.notes = request.notes
            booking.updated_at = self.clock()

            await record_audit(
                session,
                actor.user_id,
                "booking_updated",
                "booking",
                booking.id,
                old_data=old,
                new_data={
                    "check_in": booking.check_in_date.isoformat(),
                    "check_out": booking.check_out_date.isoformat(),
                    "guest_count": booking.guest_count,
                    "notes": booking.notes,
                    "total_amount": str(booking.total_amount),
                },
            )

        return booking, old

    async def _move_stay(
        self,
        session: AsyncSession,
        booking: Booking,
        check_in: date,
        check_out: date,
        nights: List[date]
    ) -> None:
        old_nights = stay_nights(booking.check_in_date, booking.check_out_date)
        await release_units(session, booking.items, old_nights)

        rooms = await self._load_rooms(
            session, booking.accommodation_id, [item.room_id for item in booking.items]
        )
        availability: Dict[UUID, RoomAvailability] = await self.engine.compute(
            session, list(rooms.values()), check_in, check_out, exclude_booking_id=booking.id
        )
        for item in booking.items:
            room_availability = availability[item.room_id]
            if not room_availability.admits(item.quantity):
                raise InsufficientAvailability(
                    item.room_id,
                    item.quantity,
                    room_availability.minimum_available,
                    room_name=item.room_name,
                    night=room_availability.tightest_night
                )

        for item in booking.items:
            await reserve_units(
                session, rooms[item.room_id], item.quantity, nights, availability[item.room_id]
            )
            item.unit_price = money(Decimal(item.price_per_night) * len(nights))

        booking.check_in_date = check_in
        booking.check_out_date = check_out
        booking.total_amount = money(
            sum((item.total_price for item in booking.items), Decimal("0"))
        )

    # =========================================================================
    # REMINDERS
    # =========================================================================

    async def send_checkin_reminders(self, target_date: Optional[date] = None) -> int:
        """
        Remind users of confirmed bookings that start on ``target_date``
        (tomorrow by default). A booking gets at most one reminder per day.

        Returns:
            Number of reminders sent
        """
        today = self.clock().date()
        target_date = target_date or (today + timedelta(days=1))
        not_reminded_today = or_(
            Booking.reminder_sent_on.is_(None),
            Booking.reminder_sent_on < today,
        )

        async with self.database.session() as session:
            result = await session.execute(
                select(Booking).where(
                    and_(
                        Booking.status == BookingStatus.CONFIRMED.value,
                        Booking.check_in_date == target_date,
                        not_reminded_today,
                    )
                )
            )
            bookings = result.scalars().all()

        sent = 0
        for booking in bookings:
            # Claim the day's reminder before sending so concurrent runs send one
            async with self.database.transaction() as session:
                claimed = await session.execute(
                    update(Booking)
                    .where(and_(Booking.id == booking.id, not_reminded_today))
                    .values(reminder_sent_on=today)
                )
            if claimed.rowcount == 0:
                continue
            await notify_quietly(
                self.notifier,
                booking.user_id,
                NotificationType.CHECKIN_REMINDER,
                f"Reminder: your stay ({booking.confirmation_code}) starts on "
                f"{booking.check_in_date.isoformat()}.",
                data={"booking_id": str(booking.id)},
                booking_id=booking.id,
            )
            sent += 1

        logger.info("Check-in reminders sent", target_date=target_date.isoformat(), sent=sent)
        return sent
