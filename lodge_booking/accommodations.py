"""
Accommodation Search
====================

Structured search over active accommodations. Filters are applied as query
clauses built from ``AccommodationFilters``; when a stay is given, candidates
are narrowed through the availability engine so only accommodations with at
least one matching room free for every night are returned.

Admins create and update accommodations together with their rooms (price,
capacity, default unit count). Rooms are changed in place or added; they are
retired with ``is_active`` rather than removed.

Accommodations are never hard-deleted: ``deactivate`` flips ``is_active``.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, exists, func, select

from .audit import record_audit
from .availability import AvailabilityEngine
from .cache import Cache, CachePrefix
from .database import Database
from .errors import AccessDenied, AccommodationNotFound, RoomNotFound
from .models import Accommodation, Room
from .schemas import (
    AccommodationCreateRequest,
    AccommodationFilters,
    AccommodationSearchResponse,
    AccommodationSummary,
    AccommodationUpdateRequest,
    Actor,
    PaginationInfo,
    RoomInput,
)

logger = structlog.get_logger(__name__)

ACCOMMODATION_FIELDS = ("name", "description", "address", "city", "country", "star_rating")
ROOM_FIELDS = (
    "name",
    "type",
    "max_occupancy",
    "base_price",
    "currency",
    "default_units",
    "is_active",
)


def room_snapshot(room: Room) -> Dict[str, Any]:
    return {
        "id": str(room.id),
        "name": room.name,
        "max_occupancy": room.max_occupancy,
        "base_price": str(room.base_price),
        "default_units": room.default_units,
        "is_active": room.is_active,
    }


class AccommodationService:
    def __init__(
        self,
        database: Database,
        cache: Cache,
        engine: Optional[AvailabilityEngine] = None
    ):
        self.database = database
        self.cache = cache
        self.engine = engine or AvailabilityEngine()

    def _matching_rooms(self, accommodation: Accommodation, filters: AccommodationFilters) -> List[Room]:
        rooms = []
        for room in accommodation.rooms:
            if not room.is_active:
                continue
            if filters.min_price is not None and room.base_price < filters.min_price:
                continue
            if filters.max_price is not None and room.base_price > filters.max_price:
                continue
            if filters.guests is not None and room.max_occupancy < filters.guests:
                continue
            rooms.append(room)
        return rooms

    async def search(self, filters: Optional[AccommodationFilters] = None) -> AccommodationSearchResponse:
        filters = filters or AccommodationFilters()

        query = select(Accommodation).where(Accommodation.is_active == True)  # noqa: E712

        if filters.city:
            query = query.where(func.lower(Accommodation.city) == filters.city.lower())
        if filters.country:
            query = query.where(func.lower(Accommodation.country) == filters.country.lower())
        if filters.min_star_rating is not None:
            query = query.where(Accommodation.star_rating >= filters.min_star_rating)

        room_conditions = [Room.accommodation_id == Accommodation.id, Room.is_active == True]  # noqa: E712
        if filters.min_price is not None:
            room_conditions.append(Room.base_price >= filters.min_price)
        if filters.max_price is not None:
            room_conditions.append(Room.base_price <= filters.max_price)
        if filters.guests is not None:
            room_conditions.append(Room.max_occupancy >= filters.guests)
        query = query.where(exists(select(Room.id).where(and_(*room_conditions))))

        sort_column = getattr(Accommodation, filters.sort_by.value)
        order = sort_column.asc() if filters.sort_order == "asc" else sort_column.desc()
        query = query.order_by(order, Accommodation.id)
        offset = (filters.page - 1) * filters.limit

        async with self.database.session() as session:
            if filters.has_dates:
                # Availability is computed per room, so paginate after filtering
                candidates = (await session.execute(query)).scalars().all()
                matched = []
                for accommodation in candidates:
                    rooms = self._matching_rooms(accommodation, filters)
                    availability = await self.engine.compute(
                        session, rooms, filters.check_in, filters.check_out
                    )
                    if any(a.minimum_available > 0 for a in availability.values()):
                        matched.append(accommodation)
                total = len(matched)
                page = matched[offset:offset + filters.limit]
            else:
                total = await session.scalar(
                    select(func.count()).select_from(query.subquery())
                ) or 0
                page = (await session.execute(query.offset(offset).limit(filters.limit))).scalars().all()

        summaries = []
        for accommodation in page:
            rooms = self._matching_rooms(accommodation, filters)
            cheapest = min(rooms, key=lambda room: room.base_price) if rooms else None
            summary = AccommodationSummary.model_validate(accommodation)
            if cheapest is not None:
                summary.min_price = cheapest.base_price
                summary.currency = cheapest.currency
            summaries.append(summary)

        logger.debug(
            "Accommodation search",
            filters=filters.model_dump(mode="json", exclude_none=True),
            total=total
        )
        return AccommodationSearchResponse(
            accommodations=summaries,
            pagination=PaginationInfo.build(total, filters.page, filters.limit),
        )

    async def get(self, accommodation_id: UUID) -> Accommodation:
        async with self.database.session() as session:
            accommodation = await session.get(Accommodation, accommodation_id)
        if accommodation is None or not accommodation.is_active:
            raise AccommodationNotFound(accommodation_id)
        return accommodation

    # =========================================================================
    # ADMIN WRITES
    # =========================================================================

    def _new_room(self, accommodation_id: UUID, room: RoomInput) -> Room:
        return Room(
            id=uuid4(),
            accommodation_id=accommodation_id,
            **room.model_dump(include=set(ROOM_FIELDS), exclude_none=True),
        )

    def _snapshot(self, accommodation: Accommodation) -> Dict[str, Any]:
        data = {field: getattr(accommodation, field) for field in ACCOMMODATION_FIELDS}
        data["rooms"] = [room_snapshot(room) for room in accommodation.rooms]
        return data

    async def create(self, actor: Actor, request: AccommodationCreateRequest) -> Accommodation:
        """
        Create an accommodation with its rooms in one transaction. Admin only.

        Raises:
            AccessDenied: If the actor is not an admin.
        """
        if not actor.is_admin:
            raise AccessDenied("accommodations", actor.user_id)

        async with self.database.transaction() as session:
            accommodation = Accommodation(
                id=uuid4(),
                owner_id=actor.user_id,
                is_active=True,
                **request.model_dump(include=set(ACCOMMODATION_FIELDS)),
            )
            accommodation.rooms = [self._new_room(accommodation.id, room) for room in request.rooms]
            session.add(accommodation)
            await session.flush()
            await record_audit(
                session,
                actor.user_id,
                "accommodation_created",
                "accommodation",
                accommodation.id,
                new_data=self._snapshot(accommodation),
            )

        logger.info(
            "Accommodation created",
            accommodation_id=str(accommodation.id),
            rooms=len(accommodation.rooms)
        )
        return accommodation

    async def update(
        self,
        actor: Actor,
        accommodation_id: UUID,
        request: AccommodationUpdateRequest
    ) -> Accommodation:
        """
        Change an accommodation's details and add or change its rooms.

        Raises:
            AccessDenied: If the actor is not an admin.
            AccommodationNotFound: If the accommodation is missing or inactive.
            RoomNotFound: If a listed room id belongs to another accommodation.
        """
        if not actor.is_admin:
            raise AccessDenied(accommodation_id, actor.user_id)

        async with self.database.transaction() as session:
            accommodation = await session.get(Accommodation, accommodation_id)
            if accommodation is None or not accommodation.is_active:
                raise AccommodationNotFound(accommodation_id)
            old_data = self._snapshot(accommodation)

            changes = request.model_dump(include=set(ACCOMMODATION_FIELDS), exclude_none=True)
            for field, value in changes.items():
                setattr(accommodation, field, value)

            rooms_by_id = {room.id: room for room in accommodation.rooms}
            missing = [
                room.id for room in request.rooms
                if room.id is not None and room.id not in rooms_by_id
            ]
            if missing:
                raise RoomNotFound(missing, accommodation_id)

            for room_input in request.rooms:
                if room_input.id is None:
                    accommodation.rooms.append(self._new_room(accommodation.id, room_input))
                    continue
                room = rooms_by_id[room_input.id]
                room_changes = room_input.model_dump(include=set(ROOM_FIELDS), exclude_none=True)
                for field, value in room_changes.items():
                    setattr(room, field, value)

            await session.flush()
            await record_audit(
                session,
                actor.user_id,
                "accommodation_updated",
                "accommodation",
                accommodation_id,
                old_data=old_data,
                new_data=self._snapshot(accommodation),
            )

        # Prices and unit counts feed cached availability
        await self.cache.delete_pattern(CachePrefix.availability(accommodation_id))
        logger.info(
            "Accommodation updated",
            accommodation_id=str(accommodation_id),
            fields=sorted(changes),
            rooms_changed=len(request.rooms)
        )
        return accommodation

    async def deactivate(self, actor: Actor, accommodation_id: UUID) -> None:
        """Soft-delete an accommodation and its rooms. Admin only."""
        if not actor.is_admin:
            raise AccessDenied(accommodation_id, actor.user_id)

        async with self.database.transaction() as session:
            accommodation = await session.get(Accommodation, accommodation_id)
            if accommodation is None or not accommodation.is_active:
                raise AccommodationNotFound(accommodation_id)
            accommodation.is_active = False
            for room in accommodation.rooms:
                room.is_active = False
            await record_audit(
                session,
                actor.user_id,
                "accommodation_deactivated",
                "accommodation",
                accommodation_id,
                old_data={"is_active": True},
                new_data={"is_active": False},
            )

        await self.cache.delete_pattern(CachePrefix.availability(accommodation_id))
        logger.info("Accommodation deactivated", accommodation_id=str(accommodation_id))
