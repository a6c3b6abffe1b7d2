from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import select

from lodge_booking.errors import InsufficientAvailability, RoomNotFound
from lodge_booking.models import AuditLog


class TestSetUnits:
    async def test_creates_override_row(self, inventory, seed, inventory_of):
        row = await inventory.set_units(seed.admin_id, seed.room_ids[0], date(2024, 2, 1), 4)

        assert row.total_units == 4
        assert row.available_units == 4
        assert await inventory_of(seed.room_ids[0]) == {date(2024, 2, 1): (4, 4)}

    async def test_booked_units_stay_held(
        self, inventory, bookings, make_seed, booking_request, inventory_of
    ):
        seed = await make_seed(rooms=[("Chalet", "700.00", 3)])
        room_id = seed.room_ids[0]
        await bookings.create_booking(
            seed.user_id,
            booking_request(seed, date(2024, 2, 1), date(2024, 2, 2), rooms=[(room_id, 2)]),
        )

        await inventory.set_units(seed.admin_id, room_id, date(2024, 2, 1), 5)

        assert await inventory_of(room_id) == {date(2024, 2, 1): (5, 3)}

    async def test_cannot_drop_below_booked(
        self, inventory, bookings, make_seed, booking_request, inventory_of
    ):
        seed = await make_seed(rooms=[("Chalet", "700.00", 3)])
        room_id = seed.room_ids[0]
        await bookings.create_booking(
            seed.user_id,
            booking_request(seed, date(2024, 2, 1), date(2024, 2, 2), rooms=[(room_id, 2)]),
        )

        with pytest.raises(InsufficientAvailability):
            await inventory.set_units(seed.admin_id, room_id, date(2024, 2, 1), 1)
        assert await inventory_of(room_id) == {date(2024, 2, 1): (3, 1)}

    async def test_blocks_bookings_for_closed_date(
        self, inventory, bookings, seed, booking_request
    ):
        await inventory.set_units(seed.admin_id, seed.room_ids[0], date(2024, 2, 2), 0)

        with pytest.raises(InsufficientAvailability) as exc_info:
            await bookings.create_booking(
                seed.user_id, booking_request(seed, date(2024, 2, 1), date(2024, 2, 4))
            )
        assert exc_info.value.night == date(2024, 2, 2)

    async def test_audited(self, inventory, database, seed):
        await inventory.set_units(seed.admin_id, seed.room_ids[0], date(2024, 2, 1), 2)

        async with database.session() as session:
            entry = (await session.execute(
                select(AuditLog).where(AuditLog.action == "inventory_override")
            )).scalar_one()
        assert entry.user_id == seed.admin_id
        assert entry.old_data["total_units"] == 1
        assert entry.new_data["total_units"] == 2

    async def test_unknown_room(self, inventory, seed):
        with pytest.raises(RoomNotFound):
            await inventory.set_units(seed.admin_id, uuid4(), date(2024, 2, 1), 2)

    async def test_negative_units(self, inventory, seed):
        with pytest.raises(ValueError):
            await inventory.set_units(seed.admin_id, seed.room_ids[0], date(2024, 2, 1), -1)
