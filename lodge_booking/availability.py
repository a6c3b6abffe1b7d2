"""
Availability Engine
===================

Computes, for a set of rooms and a half-open stay [check_in, check_out), the
minimum number of spare units each room has across every night of the stay.

Effective availability of one (room, night):
- an explicit ``room_inventory`` row wins: its ``available_units`` already
  nets out the bookings that consumed capacity on that night;
- without a row, the room's ``default_units`` minus the units held by
  non-cancelled bookings covering the night.

A room admits a request only if every night has enough spare units. The
engine only reads; callers that act on the result must hold the booking lock
and run it inside their write transaction.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidDateRange
from .models import Booking, BookingItem, BookingStatus, Room, RoomInventory

logger = structlog.get_logger(__name__)


def stay_nights(check_in: date, check_out: date) -> List[date]:
    """
    Every night of the stay, check-out excluded.

    Raises:
        InvalidDateRange: If the stay has no nights.
    """
    if check_out <= check_in:
        raise InvalidDateRange(check_in, check_out)
    return [check_in + timedelta(days=i) for i in range((check_out - check_in).days)]


def effective_nightly_availability(
    nights: Sequence[date],
    default_units: int,
    overrides: Mapping[date, int],
    reserved: Mapping[date, int]
) -> Dict[date, int]:
    """Effective spare units per night for one room."""
    nightly = {}
    for night in nights:
        if night in overrides:
            nightly[night] = overrides[night]
        else:
            nightly[night] = default_units - reserved.get(night, 0)
    return {night: max(units, 0) for night, units in nightly.items()}


@dataclass
class RoomAvailability:
    room_id: UUID
    minimum_available: int
    nightly: Dict[date, int] = field(default_factory=dict)

    def admits(self, quantity: int) -> bool:
        return quantity <= self.minimum_available

    @property
    def tightest_night(self) -> Optional[date]:
        if not self.nightly:
            return None
        return min(self.nightly, key=lambda night: (self.nightly[night], night))


class AvailabilityEngine:
    """Read-only availability computation over the store."""

    async def compute(
        self,
        session: AsyncSession,
        rooms: Sequence[Room],
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[UUID] = None
    ) -> Dict[UUID, RoomAvailability]:
        """
        Minimum availability per room for the stay.

        Args:
            session: Session to read through (the caller's transaction when
                the result drives a write)
            rooms: Rooms to evaluate
            check_in: First night of the stay
            check_out: Departure date (not a night of the stay)
            exclude_booking_id: Booking whose own reservation is ignored, used
                when a booking is being moved to new dates

        Returns:
            Mapping of room id to its availability across the stay
        """
        nights = stay_nights(check_in, check_out)
        if not rooms:
            return {}

        room_ids = [room.id for room in rooms]
        overrides = await self._load_overrides(session, room_ids, check_in, check_out)
        reserved = await self._load_reservations(
            session, room_ids, check_in, check_out, exclude_booking_id
        )

        results = {}
        for room in rooms:
            nightly = effective_nightly_availability(
                nights,
                room.default_units,
                overrides.get(room.id, {}),
                reserved.get(room.id, {}),
            )
            results[room.id] = RoomAvailability(
                room_id=room.id,
                minimum_available=min(nightly.values()),
                nightly=nightly,
            )

        logger.debug(
            "Availability computed",
            check_in=check_in.isoformat(),
            check_out=check_out.isoformat(),
            rooms={str(room_id): r.minimum_available for room_id, r in results.items()}
        )
        return results

    async def _load_overrides(
        self,
        session: AsyncSession,
        room_ids: List[UUID],
        check_in: date,
        check_out: date
    ) -> Dict[UUID, Dict[date, int]]:
        result = await session.execute(
            select(
                RoomInventory.room_id,
                RoomInventory.date,
                RoomInventory.available_units,
            ).where(
                and_(
                    RoomInventory.room_id.in_(room_ids),
                    RoomInventory.date >= check_in,
                    RoomInventory.date < check_out,
                )
            )
        )

        overrides: Dict[UUID, Dict[date, int]] = defaultdict(dict)
        for room_id, night, available_units in result.all():
            overrides[room_id][night] = available_units
        return overrides

    async def _load_reservations(
        self,
        session: AsyncSession,
        room_ids: List[UUID],
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[UUID]
    ) -> Dict[UUID, Dict[date, int]]:
        conditions = [
            BookingItem.room_id.in_(room_ids),
            Booking.status != BookingStatus.CANCELLED.value,
            Booking.check_in_date < check_out,
            Booking.check_out_date > check_in,
        ]
        if exclude_booking_id is not None:
            conditions.append(Booking.id != exclude_booking_id)

        result = await session.execute(
            select(
                BookingItem.room_id,
                BookingItem.quantity,
                Booking.check_in_date,
                Booking.check_out_date,
            )
            .join(Booking, BookingItem.booking_id == Booking.id)
            .where(and_(*conditions))
        )

        reserved: Dict[UUID, Dict[date, int]] = defaultdict(lambda: defaultdict(int))
        for room_id, quantity, booked_in, booked_out in result.all():
            night = max(booked_in, check_in)
            last = min(booked_out, check_out)
            while night < last:
                reserved[room_id][night] += quantity
                night += timedelta(days=1)
        return reserved
