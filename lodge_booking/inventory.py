"""
Room Inventory
==============

Writes to the sparse ``room_inventory`` table.

- ``reserve_units`` consumes capacity for every night of a stay, creating the
  row for a night the first time it is touched.
- ``release_units`` is its exact inverse, used when a booking is cancelled or
  moved.
- ``InventoryService.set_units`` is the admin override of a room's unit count
  for one date.

Reserve and release must run inside the caller's transaction while it holds
the booking lock for the stay.
"""

from datetime import date
from typing import Iterable, Sequence
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .availability import RoomAvailability
from .database import Database
from .errors import InsufficientAvailability, RoomNotFound
from .models import Booking, BookingItem, BookingStatus, Room, RoomInventory, utcnow

logger = structlog.get_logger(__name__)


async def reserve_units(
    session: AsyncSession,
    room: Room,
    quantity: int,
    nights: Sequence[date],
    availability: RoomAvailability
) -> None:
    """
    Take ``quantity`` units of ``room`` for every night in ``nights``.

    Existing rows are decremented with a guard on the remaining units, so a
    concurrent writer that slipped past the lock cannot drive a night below
    zero. Missing rows are seeded from the night's computed availability.

    Raises:
        InsufficientAvailability: If any night no longer has the capacity.
    """
    result = await session.execute(
        select(RoomInventory.date).where(
            and_(
                RoomInventory.room_id == room.id,
                RoomInventory.date.in_(nights),
            )
        )
    )
    existing = set(result.scalars().all())

    for night in nights:
        if night in existing:
            updated = await session.execute(
                update(RoomInventory)
                .where(
                    and_(
                        RoomInventory.room_id == room.id,
                        RoomInventory.date == night,
                        RoomInventory.available_units >= quantity,
                    )
                )
                .values(
                    available_units=RoomInventory.available_units - quantity,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 0:
                raise InsufficientAvailability(
                    room.id, quantity, availability.nightly.get(night, 0),
                    room_name=room.name, night=night
                )
            continue

        remaining = availability.nightly[night] - quantity
        if remaining < 0:
            raise InsufficientAvailability(
                room.id, quantity, availability.nightly[night],
                room_name=room.name, night=night
            )
        session.add(RoomInventory(
            room_id=room.id,
            date=night,
            total_units=room.default_units,
            available_units=remaining,
        ))

    try:
        await session.flush()
    except IntegrityError as e:
        # Another writer created one of the rows first
        raise InsufficientAvailability(
            room.id, quantity, availability.minimum_available, room_name=room.name
        ) from e

    logger.debug(
        "Inventory reserved",
        room_id=str(room.id),
        quantity=quantity,
        nights=len(nights)
    )


async def release_units(
    session: AsyncSession,
    items: Iterable[BookingItem],
    nights: Sequence[date]
) -> None:
    """Give back every item's quantity for the same nights it was taken."""
    for item in items:
        await session.execute(
            update(RoomInventory)
            .where(
                and_(
                    RoomInventory.room_id == item.room_id,
                    RoomInventory.date.in_(nights),
                )
            )
            .values(
                available_units=RoomInventory.available_units + item.quantity,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.debug(
            "Inventory released",
            room_id=str(item.room_id),
            quantity=item.quantity,
            nights=len(nights)
        )


class InventoryService:
    """Admin operations on per-date room capacity."""

    def __init__(self, database: Database):
        self.database = database

    async def set_units(
        self,
        actor_id: UUID,
        room_id: UUID,
        night: date,
        total_units: int
    ) -> RoomInventory:
        """
        Override the number of units of a room on one date.

        Units already held by bookings stay held; the override only moves the
        spare capacity.

        Raises:
            RoomNotFound: If the room does not exist.
            InsufficientAvailability: If fewer units than are already booked
                are requested.
        """
        if total_units < 0:
            raise ValueError("total_units must not be negative")

        async with self.database.transaction() as session:
            room = await session.get(Room, room_id)
            if room is None:
                raise RoomNotFound([room_id])

            row = (
                await session.execute(
                    select(RoomInventory).where(
                        and_(RoomInventory.room_id == room_id, RoomInventory.date == night)
                    )
                )
            ).scalar_one_or_none()

            if row is None:
                held = await self._units_held(session, room_id, night)
                old = {"total_units": room.default_units, "available_units": room.default_units - held}
                if held > total_units:
                    raise InsufficientAvailability(
                        room_id, held, total_units, room_name=room.name, night=night
                    )
                row = RoomInventory(
                    room_id=room_id,
                    date=night,
                    total_units=total_units,
                    available_units=total_units - held,
                )
                session.add(row)
            else:
                held = row.total_units - row.available_units
                old = {"total_units": row.total_units, "available_units": row.available_units}
                if held > total_units:
                    raise InsufficientAvailability(
                        room_id, held, total_units, room_name=room.name, night=night
                    )
                row.total_units = total_units
                row.available_units = total_units - held

            await record_audit(
                session,
                actor_id,
                "inventory_override",
                "room",
                room_id,
                old_data={"date": night.isoformat(), **old},
                new_data={
                    "date": night.isoformat(),
                    "total_units": row.total_units,
                    "available_units": row.available_units,
                },
            )

        logger.info(
            "Inventory override applied",
            room_id=str(room_id),
            date=night.isoformat(),
            total_units=row.total_units,
            available_units=row.available_units
        )
        return row

    async def _units_held(self, session: AsyncSession, room_id: UUID, night: date) -> int:
        held = await session.scalar(
            select(func.coalesce(func.sum(BookingItem.quantity), 0))
            .join(Booking, BookingItem.booking_id == Booking.id)
            .where(
                and_(
                    BookingItem.room_id == room_id,
                    Booking.status != BookingStatus.CANCELLED.value,
                    Booking.check_in_date <= night,
                    Booking.check_out_date > night,
                )
            )
        )
        return int(held or 0)
