from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from lodge_booking.errors import (
    AccessDenied,
    InsufficientAvailability,
    InvalidDateRange,
    UpdateNotAllowed,
)
from lodge_booking.models import BookingStatus, NotificationType
from lodge_booking.schemas import BookingUpdateRequest


@pytest.fixture
async def booking(bookings, seed, booking_request):
    return await bookings.create_booking(
        seed.user_id, booking_request(seed, date(2024, 1, 10), date(2024, 1, 12))
    )


class TestUpdateBooking:
    async def test_moving_dates_releases_old_nights_and_takes_new_ones(
        self, bookings, seed, booking, inventory_of, notifier
    ):
        updated = await bookings.update_booking(
            seed.actor,
            booking.id,
            BookingUpdateRequest(check_in=date(2024, 1, 14), check_out=date(2024, 1, 17)),
        )

        assert updated.check_in_date == date(2024, 1, 14)
        assert updated.check_out_date == date(2024, 1, 17)
        assert updated.items[0].unit_price == Decimal("3600.00")
        assert updated.total_amount == Decimal("3600.00")
        assert await inventory_of(seed.room_ids[0]) == {
            date(2024, 1, 10): (1, 1),
            date(2024, 1, 11): (1, 1),
            date(2024, 1, 14): (1, 0),
            date(2024, 1, 15): (1, 0),
            date(2024, 1, 16): (1, 0),
        }

        sent = notifier.of_type(NotificationType.BOOKING_UPDATED)
        assert sent[0]["data"]["previous"]["check_in"] == "2024-01-10"

    async def test_overlapping_move_counts_own_units_once(self, bookings, seed, booking, inventory_of):
        updated = await bookings.update_booking(
            seed.actor,
            booking.id,
            BookingUpdateRequest(check_in=date(2024, 1, 11), check_out=date(2024, 1, 13)),
        )

        assert updated.check_in_date == date(2024, 1, 11)
        assert await inventory_of(seed.room_ids[0]) == {
            date(2024, 1, 10): (1, 1),
            date(2024, 1, 11): (1, 0),
            date(2024, 1, 12): (1, 0),
        }

    async def test_only_check_out_given(self, bookings, seed, booking):
        updated = await bookings.update_booking(
            seed.actor, booking.id, BookingUpdateRequest(check_out=date(2024, 1, 11))
        )
        assert updated.nights == 1
        assert updated.total_amount == Decimal("1200.00")

    async def test_conflicting_move_keeps_original_stay(
        self, bookings, seed, booking, booking_request, inventory_of
    ):
        await bookings.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 15), date(2024, 1, 16))
        )

        with pytest.raises(InsufficientAvailability) as exc_info:
            await bookings.update_booking(
                seed.actor,
                booking.id,
                BookingUpdateRequest(check_in=date(2024, 1, 14), check_out=date(2024, 1, 17)),
            )

        assert exc_info.value.night == date(2024, 1, 15)
        details = await bookings.get_booking(seed.actor, booking.id)
        assert details.check_in_date == date(2024, 1, 10)
        assert (await inventory_of(seed.room_ids[0]))[date(2024, 1, 10)] == (1, 0)

    async def test_guest_count_and_notes_without_dates(self, bookings, seed, booking, inventory_of):
        before = await inventory_of(seed.room_ids[0])

        updated = await bookings.update_booking(
            seed.actor, booking.id, BookingUpdateRequest(guest_count=1, notes="Late arrival")
        )

        assert updated.guest_count == 1
        assert updated.notes == "Late arrival"
        assert await inventory_of(seed.room_ids[0]) == before

    async def test_empty_new_range(self, bookings, seed, booking):
        with pytest.raises(InvalidDateRange):
            await bookings.update_booking(
                seed.actor, booking.id, BookingUpdateRequest(check_out=date(2024, 1, 10))
            )

    async def test_confirmed_booking_cannot_be_edited(self, bookings, lifecycle, seed, booking):
        await lifecycle.update_status(seed.admin, booking.id, BookingStatus.CONFIRMED)

        with pytest.raises(UpdateNotAllowed):
            await bookings.update_booking(seed.actor, booking.id, BookingUpdateRequest(guest_count=1))

    async def test_inside_window_cannot_be_edited(self, bookings, clock, seed, booking):
        clock.now = datetime(2024, 1, 9, 6, 0, tzinfo=timezone.utc)

        with pytest.raises(UpdateNotAllowed):
            await bookings.update_booking(seed.actor, booking.id, BookingUpdateRequest(guest_count=1))

    async def test_stranger_cannot_edit(self, bookings, make_seed, booking):
        stranger = await make_seed(name="Elsewhere")
        with pytest.raises(AccessDenied):
            await bookings.update_booking(
                stranger.actor, booking.id, BookingUpdateRequest(guest_count=1)
            )
