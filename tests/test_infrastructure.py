import asyncio
from datetime import date, datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from lodge_booking.booking_service import BookingService
from lodge_booking.cache import CachePrefix, MemoryCache, invalidate_booking_entries
from lodge_booking.errors import LockTimeout
from lodge_booking.locking import LocalLockManager
from lodge_booking.models import BookingStatus, Notification, NotificationType
from lodge_booking.notifications import DatabaseNotifier, Notifier, notify_quietly


class TestLocalLockManager:
    async def test_holders_are_serialized(self):
        locks = LocalLockManager(poll_interval=0.001)
        events = []

        async def worker(name):
            async with locks.hold("room:1", timeout=1):
                events.append(f"{name}:in")
                await asyncio.sleep(0.01)
                events.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a:in", "a:out", "b:in", "b:out"],
            ["b:in", "b:out", "a:in", "a:out"],
        )

    async def test_distinct_keys_do_not_block(self):
        locks = LocalLockManager(poll_interval=0.001)
        async with locks.hold("a", timeout=0.05):
            async with locks.hold("b", timeout=0.05):
                assert locks.is_locked("a") and locks.is_locked("b")

    async def test_timeout(self):
        locks = LocalLockManager(poll_interval=0.001)
        async with locks.hold("busy", timeout=1):
            with pytest.raises(LockTimeout):
                async with locks.hold("busy", timeout=0.02):
                    pytest.fail("block ran without the lock")

    async def test_released_on_error(self):
        locks = LocalLockManager()
        with pytest.raises(RuntimeError):
            async with locks.hold("k", timeout=1):
                raise RuntimeError("boom")
        assert not locks.is_locked("k")

    async def test_with_lock_returns_result(self):
        locks = LocalLockManager()

        async def work():
            return 42

        assert await locks.with_lock("k", work, timeout=1) == 42


class TestMemoryCache:
    async def test_expired_entries_are_dropped(self):
        cache = MemoryCache()
        await cache.set("k", {"a": 1}, ttl=0)
        assert await cache.get("k") is None

    async def test_values_come_back_as_json(self):
        cache = MemoryCache()
        await cache.set("k", {"day": date(2024, 1, 10)}, ttl=60)
        assert await cache.get("k") == {"day": "2024-01-10"}

    async def test_invalidation_by_prefix(self):
        cache = MemoryCache()
        booking_id, user_id, accommodation_id = uuid4(), uuid4(), uuid4()
        other_user = uuid4()
        await cache.set(CachePrefix.booking(booking_id), {}, ttl=60)
        await cache.set(f"{CachePrefix.user_bookings(user_id)}page1", {}, ttl=60)
        await cache.set(f"{CachePrefix.user_bookings(other_user)}page1", {}, ttl=60)
        await cache.set(f"{CachePrefix.availability(accommodation_id)}2024-01-10", {}, ttl=60)

        await invalidate_booking_entries(cache, booking_id, user_id, accommodation_id)

        assert await cache.get(CachePrefix.booking(booking_id)) is None
        assert await cache.get(f"{CachePrefix.user_bookings(user_id)}page1") is None
        assert await cache.get(f"{CachePrefix.availability(accommodation_id)}2024-01-10") is None
        assert await cache.get(f"{CachePrefix.user_bookings(other_user)}page1") == {}


class ExplodingNotifier(Notifier):
    async def notify(self, user_id, type, message, data=None, booking_id=None):
        raise ConnectionError("smtp down")


class TestNotifications:
    async def test_database_notifier_stores_row(self, database, seed):
        notifier = DatabaseNotifier(database)

        await notifier.notify(
            seed.user_id, NotificationType.PAYMENT_SUCCESS, "Paid", data={"amount": "10.00"}
        )

        async with database.session() as session:
            stored = (await session.execute(select(Notification))).scalar_one()
        assert stored.title == "Payment received"
        assert stored.data == {"amount": "10.00"}
        assert not stored.is_read

    async def test_notifier_failure_does_not_escape(self):
        await notify_quietly(
            ExplodingNotifier(), uuid4(), NotificationType.BOOKING_CONFIRMATION, "hello"
        )

    async def test_failed_notification_does_not_undo_booking(
        self, database, locks, cache, clock, seed, booking_request
    ):
        service = BookingService(database, locks, cache, ExplodingNotifier(), clock=clock)

        booking = await service.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 10), date(2024, 1, 11))
        )

        details = await service.get_booking(seed.actor, booking.id)
        assert details.status == BookingStatus.PENDING


class TestCheckinReminders:
    async def test_reminds_confirmed_bookings_once_per_day(
        self, database, locks, cache, clock, lifecycle, make_seed, booking_request
    ):
        seed = await make_seed(rooms=[("Chalet", "700.00", 2)])
        service = BookingService(database, locks, cache, DatabaseNotifier(database), clock=clock)
        confirmed = await service.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 2), date(2024, 1, 4))
        )
        await service.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 2), date(2024, 1, 3))
        )
        await lifecycle.update_status(seed.admin, confirmed.id, BookingStatus.CONFIRMED)

        assert await service.send_checkin_reminders() == 1
        assert await service.send_checkin_reminders() == 0

        async with database.session() as session:
            reminders = (await session.execute(
                select(Notification).where(
                    Notification.type == NotificationType.CHECKIN_REMINDER.value
                )
            )).scalars().all()
        assert [r.booking_id for r in reminders] == [confirmed.id]

    async def test_other_dates_are_ignored(self, bookings, lifecycle, seed, booking_request):
        booking = await bookings.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 5), date(2024, 1, 6))
        )
        await lifecycle.update_status(seed.admin, booking.id, BookingStatus.CONFIRMED)

        assert await bookings.send_checkin_reminders() == 0
        assert await bookings.send_checkin_reminders(date(2024, 1, 5)) == 1

    async def test_dedupe_does_not_depend_on_the_notifier(
        self, bookings, lifecycle, notifier, clock, seed, booking_request
    ):
        booking = await bookings.create_booking(
            seed.user_id, booking_request(seed, date(2024, 1, 5), date(2024, 1, 6))
        )
        await lifecycle.update_status(seed.admin, booking.id, BookingStatus.CONFIRMED)

        assert await bookings.send_checkin_reminders(date(2024, 1, 5)) == 1
        assert await bookings.send_checkin_reminders(date(2024, 1, 5)) == 0
        assert len(notifier.of_type(NotificationType.CHECKIN_REMINDER)) == 1

        clock.now = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)
        assert await bookings.send_checkin_reminders(date(2024, 1, 5)) == 1
        assert len(notifier.of_type(NotificationType.CHECKIN_REMINDER)) == 2
