"""
Notifications
=============

Fire-and-forget user notifications. Callers dispatch after their own
transaction has committed; a failed notification is logged and never fails
the operation that triggered it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .database import Database
from .models import Notification, NotificationType

logger = structlog.get_logger(__name__)


TITLES: Dict[NotificationType, str] = {
    NotificationType.BOOKING_CONFIRMATION: "Booking received",
    NotificationType.BOOKING_STATUS_CHANGE: "Booking status updated",
    NotificationType.BOOKING_CANCELLED: "Booking cancelled",
    NotificationType.BOOKING_UPDATED: "Booking updated",
    NotificationType.CHECKIN_REMINDER: "Check-in tomorrow",
    NotificationType.PAYMENT_SUCCESS: "Payment received",
    NotificationType.PAYMENT_FAILURE: "Payment failed",
    NotificationType.REFUND_PROCESSED: "Refund processed",
}


class Notifier(ABC):
    @abstractmethod
    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        booking_id: Optional[UUID] = None
    ) -> None:
        """Deliver a notification. Must not raise."""


class DatabaseNotifier(Notifier):
    """Stores notifications in the ``notifications`` table for in-app display."""

    def __init__(self, database: Database):
        self.database = database

    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        booking_id: Optional[UUID] = None
    ) -> None:
        try:
            async with self.database.transaction() as session:
                session.add(Notification(
                    user_id=user_id,
                    booking_id=booking_id,
                    type=type.value,
                    title=TITLES.get(type, type.value.replace("_", " ").capitalize()),
                    message=message,
                    data=data,
                ))
        except SQLAlchemyError as e:
            logger.error(
                "Failed to store notification",
                user_id=str(user_id),
                notification_type=type.value,
                error=str(e)
            )
            return

        logger.info(
            "Notification stored",
            user_id=str(user_id),
            notification_type=type.value,
            booking_id=str(booking_id) if booking_id else None
        )


async def notify_quietly(
    notifier: Notifier,
    user_id: UUID,
    type: NotificationType,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    booking_id: Optional[UUID] = None
) -> None:
    """Dispatch through any notifier without letting its failure escape."""
    try:
        await notifier.notify(user_id, type, message, data=data, booking_id=booking_id)
    except Exception:
        logger.exception(
            "Notifier raised",
            user_id=str(user_id),
            notification_type=type.value
        )
