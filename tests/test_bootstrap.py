from datetime import date

from lodge_booking.bootstrap import build_providers, build_services
from lodge_booking.cache import MemoryCache
from lodge_booking.config import Settings
from lodge_booking.locking import LocalLockManager
from lodge_booking.models import PaymentProviderName
from lodge_booking.payments import FlutterwaveProvider, StripeProvider


def test_only_configured_providers_are_built():
    providers = build_providers(
        Settings(STRIPE_SECRET_KEY="sk_test", FLW_SECRET_KEY="FLWSECK", FLW_SECRET_HASH="hash")
    )

    assert set(providers) == {PaymentProviderName.STRIPE, PaymentProviderName.FLUTTERWAVE}
    assert isinstance(providers[PaymentProviderName.STRIPE], StripeProvider)
    assert isinstance(providers[PaymentProviderName.FLUTTERWAVE], FlutterwaveProvider)


def test_no_credentials_no_providers():
    assert build_providers(Settings(_env_file=None)) == {}


async def test_services_share_one_store_lock_and_cache(database, seed, booking_request):
    services = build_services(
        Settings(_env_file=None, BOOKING_CURRENCY="USD", CANCELLATION_WINDOW_HOURS=48),
        database=database,
        use_redis=False,
    )

    assert isinstance(services.locks, LocalLockManager)
    assert isinstance(services.cache, MemoryCache)
    assert services.bookings.cache is services.lifecycle.cache is services.payments.cache
    assert services.lifecycle.cancellation_window_hours == 48

    booking = await services.bookings.create_booking(
        seed.user_id, booking_request(seed, date(2030, 1, 10), date(2030, 1, 11))
    )
    assert booking.currency == "USD"

    await services.close()
