"""
Service Wiring
==============

Builds every service once per process from ``Settings`` and tears them down
again. Nothing in the booking core reaches for a global lock, cache or
database; they are constructed here and passed in.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog

from .accommodations import AccommodationService
from .availability import AvailabilityEngine
from .booking_service import BookingService
from .cache import Cache, MemoryCache, RedisCache
from .config import Settings
from .database import Database
from .inventory import InventoryService
from .lifecycle import BookingLifecycle
from .locking import LocalLockManager, LockManager, RedisLockManager
from .models import PaymentProviderName
from .notifications import DatabaseNotifier, Notifier
from .payments import (
    FlutterwaveProvider,
    PaymentProvider,
    PaymentService,
    PayPalProvider,
    StripeProvider,
)

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    database: Database
    locks: LockManager
    cache: Cache
    notifier: Notifier
    bookings: BookingService
    lifecycle: BookingLifecycle
    inventory: InventoryService
    accommodations: AccommodationService
    payments: PaymentService
    redis: Optional[aioredis.Redis] = None

    async def close(self) -> None:
        await self.payments.close()
        await self.cache.close()
        if self.redis is not None:
            await self.redis.aclose()
        await self.database.close()
        logger.info("Services closed")


def build_providers(settings: Settings) -> Dict[PaymentProviderName, PaymentProvider]:
    """Providers whose credentials are configured."""
    timeout = settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
    providers: Dict[PaymentProviderName, PaymentProvider] = {}

    if settings.STRIPE_SECRET_KEY:
        providers[PaymentProviderName.STRIPE] = StripeProvider(
            settings.STRIPE_SECRET_KEY,
            settings.STRIPE_WEBHOOK_SECRET,
            timeout=timeout,
        )
    if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET:
        providers[PaymentProviderName.PAYPAL] = PayPalProvider(
            settings.PAYPAL_CLIENT_ID,
            settings.PAYPAL_CLIENT_SECRET,
            mode=settings.PAYPAL_MODE,
            webhook_id=settings.PAYPAL_WEBHOOK_ID,
            frontend_url=settings.FRONTEND_URL,
            timeout=timeout,
        )
    if settings.FLW_SECRET_KEY:
        providers[PaymentProviderName.FLUTTERWAVE] = FlutterwaveProvider(
            settings.FLW_SECRET_KEY,
            settings.FLW_SECRET_HASH,
            frontend_url=settings.FRONTEND_URL,
            timeout=timeout,
        )
    return providers


def build_services(
    settings: Settings,
    database: Optional[Database] = None,
    use_redis: bool = True
) -> Services:
    """
    Construct the service graph.

    Args:
        settings: Process settings
        database: Existing store to reuse (tests pass a SQLite-backed one)
        use_redis: Use redis for locks and cache; otherwise process-local ones
    """
    database = database or Database(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_size=settings.DATABASE_POOL_SIZE,
    )

    redis = None
    if use_redis:
        redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        locks: LockManager = RedisLockManager(
            redis,
            lease_seconds=settings.BOOKING_LOCK_LEASE_SECONDS,
            poll_interval=settings.LOCK_POLL_INTERVAL_SECONDS,
        )
        cache: Cache = RedisCache(redis)
    else:
        locks = LocalLockManager(poll_interval=settings.LOCK_POLL_INTERVAL_SECONDS)
        cache = MemoryCache()

    notifier = DatabaseNotifier(database)
    engine = AvailabilityEngine()

    lifecycle = BookingLifecycle(
        database,
        cache,
        notifier,
        cancellation_window_hours=settings.CANCELLATION_WINDOW_HOURS,
    )
    bookings = BookingService(
        database,
        locks,
        cache,
        notifier,
        engine=engine,
        lock_timeout=settings.BOOKING_LOCK_TIMEOUT_SECONDS,
        currency=settings.BOOKING_CURRENCY,
        cancellation_window_hours=settings.CANCELLATION_WINDOW_HOURS,
        booking_cache_ttl=settings.BOOKING_CACHE_TTL_SECONDS,
        availability_cache_ttl=settings.AVAILABILITY_CACHE_TTL_SECONDS,
    )
    payments = PaymentService(
        database,
        cache,
        notifier,
        lifecycle,
        build_providers(settings),
        webhook_idempotency_ttl=settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS,
        locks=locks,
        lock_timeout=settings.BOOKING_LOCK_TIMEOUT_SECONDS,
    )

    logger.info(
        "Services built",
        lock_backend=type(locks).__name__,
        cache_backend=type(cache).__name__,
        payment_providers=sorted(p.value for p in payments.providers)
    )

    return Services(
        database=database,
        locks=locks,
        cache=cache,
        notifier=notifier,
        bookings=bookings,
        lifecycle=lifecycle,
        inventory=InventoryService(database),
        accommodations=AccommodationService(database, cache, engine=engine),
        payments=payments,
        redis=redis,
    )
