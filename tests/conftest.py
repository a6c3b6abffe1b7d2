"""Shared fixtures: SQLite-backed store, process-local lock/cache, recording notifier."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select

from lodge_booking.accommodations import AccommodationService
from lodge_booking.booking_service import BookingService
from lodge_booking.cache import MemoryCache
from lodge_booking.database import Database
from lodge_booking.inventory import InventoryService
from lodge_booking.lifecycle import BookingLifecycle
from lodge_booking.locking import LocalLockManager
from lodge_booking.models import (
    Accommodation,
    NotificationType,
    Room,
    RoomInventory,
    User,
    UserRole,
)
from lodge_booking.notifications import Notifier
from lodge_booking.schemas import Actor, BookingCreateRequest, RoomRequest


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        booking_id: Optional[UUID] = None
    ) -> None:
        self.sent.append({
            "user_id": user_id,
            "type": type,
            "message": message,
            "data": data,
            "booking_id": booking_id,
        })

    def of_type(self, type: NotificationType) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["type"] == type]


class Seed:
    """Ids of the rows created by ``seed``."""

    def __init__(self, user: User, admin: User, accommodation: Accommodation, rooms: List[Room]):
        self.user_id = user.id
        self.admin_id = admin.id
        self.accommodation_id = accommodation.id
        self.room_ids = [room.id for room in rooms]
        self.rooms = rooms

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id)

    @property
    def admin(self) -> Actor:
        return Actor(user_id=self.admin_id, role=UserRole.ADMIN)


async def seed_accommodation(
    database: Database,
    rooms: Sequence[Tuple[str, str, int]] = (("Garden Suite", "1200.00", 1),),
    city: str = "Cape Town",
    country: str = "South Africa",
    star_rating: int = 4,
    name: str = "Fynbos Lodge",
    max_occupancy: int = 2
) -> Seed:
    """Create a guest, an admin, and one accommodation with the given rooms."""
    async with database.transaction() as session:
        suffix = uuid4().hex[:8]
        user = User(id=uuid4(), email=f"guest-{suffix}@example.com", name="Guest")
        admin = User(
            id=uuid4(),
            email=f"admin-{suffix}@example.com",
            name="Admin",
            role=UserRole.ADMIN.value,
        )
        accommodation = Accommodation(
            id=uuid4(),
            name=name,
            city=city,
            country=country,
            star_rating=star_rating,
        )
        room_rows = [
            Room(
                id=uuid4(),
                accommodation_id=accommodation.id,
                name=room_name,
                base_price=Decimal(price),
                default_units=units,
                max_occupancy=max_occupancy,
                currency="ZAR",
            )
            for room_name, price, units in rooms
        ]
        session.add_all([user, admin, accommodation, *room_rows])
    return Seed(user, admin, accommodation, room_rows)


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}")
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def locks():
    return LocalLockManager(poll_interval=0.01)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bookings(database, locks, cache, notifier, clock):
    return BookingService(database, locks, cache, notifier, lock_timeout=2.0, clock=clock)


@pytest.fixture
def lifecycle(database, cache, notifier, clock):
    return BookingLifecycle(database, cache, notifier, clock=clock)


@pytest.fixture
def inventory(database):
    return InventoryService(database)


@pytest.fixture
def accommodations(database, cache):
    return AccommodationService(database, cache)


@pytest.fixture
def make_seed(database):
    async def _make(**kwargs) -> Seed:
        return await seed_accommodation(database, **kwargs)
    return _make


@pytest.fixture
async def seed(make_seed):
    return await make_seed()


@pytest.fixture
def inventory_of(database):
    """Map of date -> (total_units, available_units) for a room."""
    async def _rows(room_id: UUID) -> Dict[Any, Tuple[int, int]]:
        async with database.session() as session:
            result = await session.execute(
                select(RoomInventory.date, RoomInventory.total_units, RoomInventory.available_units)
                .where(RoomInventory.room_id == room_id)
            )
            return {night: (total, available) for night, total, available in result.all()}
    return _rows


@pytest.fixture
def booking_request():
    """Factory for create requests against a seeded accommodation."""
    def _build(seed: Seed, check_in, check_out, rooms=None, guest_count: int = 2, notes=None):
        rooms = rooms or [(seed.room_ids[0], 1)]
        return BookingCreateRequest(
            accommodation_id=seed.accommodation_id,
            check_in=check_in,
            check_out=check_out,
            guest_count=guest_count,
            rooms=[RoomRequest(room_id=room_id, quantity=quantity) for room_id, quantity in rooms],
            notes=notes,
        )
    return _build
