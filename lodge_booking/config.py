"""
Configuration
=============

Environment-driven settings for the booking core. Values are read from the
process environment (and an optional ``.env`` file) once at import time and
passed explicitly into the services that need them.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Store
    DATABASE_URL: str = "postgresql+asyncpg://postgres@localhost:5432/hotel_booking_db"
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 10

    # Lock / cache backend
    REDIS_URL: str = "redis://localhost:6379/0"

    # Booking rules
    BOOKING_LOCK_TIMEOUT_SECONDS: float = 15.0
    BOOKING_LOCK_LEASE_SECONDS: float = 60.0
    LOCK_POLL_INTERVAL_SECONDS: float = 0.1
    CANCELLATION_WINDOW_HOURS: int = 24
    BOOKING_CURRENCY: str = "ZAR"

    # Cache TTLs
    BOOKING_CACHE_TTL_SECONDS: int = 300
    AVAILABILITY_CACHE_TTL_SECONDS: int = 60
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = 86400

    # Payment providers
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_MODE: str = "sandbox"
    PAYPAL_WEBHOOK_ID: Optional[str] = None
    FLW_SECRET_KEY: str = ""
    FLW_SECRET_HASH: str = ""
    PAYMENT_PROVIDER_TIMEOUT_SECONDS: int = 30
    FRONTEND_URL: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True


settings = Settings()
