"""
Background Jobs
===============

Celery app and periodic jobs that run beside the booking core:
- daily check-in reminders for confirmed bookings starting tomorrow
- processing of pending refund rows created by cancellations

Each task builds the services, runs its async implementation, and closes
them again.
"""

import asyncio
from datetime import date
from typing import Optional

import structlog
from celery import Celery
from celery.schedules import crontab

from .bootstrap import build_services
from .config import settings
from .errors import PaymentProviderError, UnsupportedPaymentProvider
from .logging_setup import configure_logging

configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = structlog.get_logger(__name__)

# =============================================================================
# CELERY CONFIGURATION
# =============================================================================

celery = Celery(
    "lodge_booking",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max per task
    task_soft_time_limit=240,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery.conf.beat_schedule = {
    "send-checkin-reminders": {
        "task": "lodge_booking.tasks.send_checkin_reminders",
        "schedule": crontab(hour=9, minute=0),  # 9 AM UTC daily
    },
    "process-pending-refunds": {
        "task": "lodge_booking.tasks.process_pending_refunds",
        "schedule": crontab(minute="*/15"),
    },
}


# =============================================================================
# REMINDERS
# =============================================================================

@celery.task(name="lodge_booking.tasks.send_checkin_reminders")
def send_checkin_reminders(target_date: Optional[str] = None) -> dict:
    """Send reminders for bookings checking in on ``target_date`` (ISO, default tomorrow)."""
    return asyncio.run(_send_checkin_reminders(target_date))


async def _send_checkin_reminders(target_date: Optional[str]) -> dict:
    services = build_services(settings)
    try:
        sent = await services.bookings.send_checkin_reminders(
            date.fromisoformat(target_date) if target_date else None
        )
    finally:
        await services.close()
    return {"sent": sent}


# =============================================================================
# REFUNDS
# =============================================================================

@celery.task(name="lodge_booking.tasks.process_pending_refunds")
def process_pending_refunds(limit: int = 100) -> dict:
    """Send pending refund rows to their providers."""
    return asyncio.run(_process_pending_refunds(limit))


async def _process_pending_refunds(limit: int) -> dict:
    services = build_services(settings)
    results = {"processed": [], "skipped": [], "failed": []}

    try:
        for refund_id in await services.payments.pending_refund_ids(limit):
            try:
                refund = await services.payments.process_pending_refund(refund_id)
            except (PaymentProviderError, UnsupportedPaymentProvider) as e:
                logger.warning(
                    "Pending refund failed",
                    refund_id=str(refund_id),
                    provider=e.provider,
                    error=e.message
                )
                results["failed"].append({"refund_id": str(refund_id), "error": e.message})
                continue

            if refund is None:
                results["skipped"].append(str(refund_id))
            else:
                results["processed"].append({"refund_id": str(refund_id), "status": refund.status})
    finally:
        await services.close()

    logger.info(
        "Pending refunds processed",
        processed=len(results["processed"]),
        skipped=len(results["skipped"]),
        failed=len(results["failed"])
    )
    return results
