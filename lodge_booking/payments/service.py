"""
Payment Service
===============

Payments and refunds against bookings.

- Payment intents are created with the provider first, then recorded as a
  ``pending`` payment row keyed by the provider reference.
- Webhooks are verified by the provider, de-duplicated by event id through
  the cache, and applied by provider reference. A success completes the
  payment, marks the booking paid and confirms a pending booking.
- Refunds are always new ``refund`` rows pointing at the original payment.
  An admin refund claims its amount (a ``processing`` row) before the
  provider is called; a provider rejection marks that row ``failed``.
  Pending refund rows (created when a user cancels) are processed later by
  ``process_pending_refund``.
"""

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

import structlog
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import Cache, CachePrefix, invalidate_booking_entries
from ..database import Database
from ..errors import (
    AccessDenied,
    BookingNotFound,
    PaymentNotFound,
    PaymentNotPayable,
    PaymentProviderError,
    RefundNotAllowed,
    UnsupportedPaymentProvider,
)
from ..lifecycle import BookingLifecycle, TransitionRecord
from ..metrics import PAYMENT_EVENTS
from ..models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    PaymentType,
    User,
    utcnow,
)
from ..locking import LocalLockManager, LockManager
from ..notifications import Notifier, notify_quietly
from ..schemas import (
    Actor,
    PaginationInfo,
    PaymentIntentRequest,
    PaymentIntentResponse,
    RefundRequest,
)
from .base_provider import PaymentProvider, RefundResult, WebhookEventKind

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})
# Refund rows that hold part of the original amount
OPEN_REFUND_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.COMPLETED.value,
)


def refund_lock_key(payment_id: UUID) -> str:
    return f"payment:refund:{payment_id}"


class PaymentService:
    def __init__(
        self,
        database: Database,
        cache: Cache,
        notifier: Notifier,
        lifecycle: BookingLifecycle,
        providers: Mapping[PaymentProviderName, PaymentProvider],
        webhook_idempotency_ttl: int = 86400,
        locks: Optional[LockManager] = None,
        lock_timeout: float = 10.0
    ):
        self.database = database
        self.cache = cache
        self.notifier = notifier
        self.lifecycle = lifecycle
        self.providers = dict(providers)
        self.webhook_idempotency_ttl = webhook_idempotency_ttl
        self.locks = locks or LocalLockManager()
        self.lock_timeout = lock_timeout

    def provider(self, name) -> PaymentProvider:
        try:
            return self.providers[PaymentProviderName(name)]
        except (ValueError, KeyError):
            raise UnsupportedPaymentProvider(str(getattr(name, "value", name))) from None

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()

    # =========================================================================
    # PAYMENT INTENTS
    # =========================================================================

    async def create_payment_intent(
        self,
        actor: Actor,
        request: PaymentIntentRequest
    ) -> PaymentIntentResponse:
        """
        Raises:
            UnsupportedPaymentProvider: If the provider is not configured.
            BookingNotFound / AccessDenied: For a missing or foreign booking.
            PaymentNotPayable: If the booking is not pending/confirmed or is
                already paid.
            PaymentProviderError: If the provider rejects the request.
        """
        provider = self.provider(request.provider)

        async with self.database.session() as session:
            booking = await session.get(Booking, request.booking_id)
            if booking is None:
                raise BookingNotFound(request.booking_id)
            if not actor.is_admin and booking.user_id != actor.user_id:
                raise AccessDenied(request.booking_id, actor.user_id)
            if booking.status not in PAYABLE_STATUSES:
                raise PaymentNotPayable(booking.id, booking.status)
            if booking.payment_status == BookingPaymentStatus.PAID.value:
                raise PaymentNotPayable(booking.id, booking.payment_status)
            user = await session.get(User, booking.user_id)

        payment_id = uuid4()
        metadata = {
            "booking_id": str(booking.id),
            "payment_id": str(payment_id),
            "user_id": str(booking.user_id),
            "description": f"Booking {booking.confirmation_code}",
        }
        if user is not None:
            metadata.update({"email": user.email, "name": user.name, "phone": user.phone or ""})
        if request.return_url:
            metadata["return_url"] = request.return_url

        # Provider call happens outside any store transaction
        intent = await provider.create_intent(booking.total_amount, booking.currency, metadata)

        async with self.database.transaction() as session:
            session.add(Payment(
                id=payment_id,
                booking_id=booking.id,
                user_id=booking.user_id,
                type=PaymentType.PAYMENT.value,
                status=PaymentStatus.PENDING.value,
                provider=provider.name.value,
                provider_reference=intent.provider_reference,
                amount=booking.total_amount,
                currency=booking.currency,
                provider_response=intent.raw,
            ))

        PAYMENT_EVENTS.labels(provider=provider.name.value, event="intent_created").inc()
        logger.info(
            "Payment intent created",
            payment_id=str(payment_id),
            booking_id=str(booking.id),
            provider=provider.name.value,
            provider_reference=intent.provider_reference
        )
        await invalidate_booking_entries(self.cache, booking.id, booking.user_id)

        return PaymentIntentResponse(
            payment_id=payment_id,
            provider=provider.name,
            provider_reference=intent.provider_reference,
            amount=booking.total_amount,
            currency=booking.currency,
            client_secret=intent.client_secret,
            redirect_url=intent.redirect_url,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def handle_webhook(
        self,
        provider_name,
        payload: bytes,
        headers: Mapping[str, str]
    ) -> Dict[str, Any]:
        """
        Verify and apply a provider webhook.

        Raises:
            UnsupportedPaymentProvider: If the provider is not configured.
            WebhookSignatureError: If the webhook is not authentic.
        """
        provider = self.provider(provider_name)
        event = await provider.parse_webhook(payload, headers)
        key = CachePrefix.webhook(provider.name.value, event.event_id)

        if await self.cache.get(key) is not None:
            logger.info(
                "Duplicate webhook ignored",
                provider=provider.name.value,
                event_id=event.event_id
            )
            return {"received": True, "duplicate": True}

        if event.kind == WebhookEventKind.PAYMENT_SUCCEEDED:
            await self.process_payment_success(provider.name, event.provider_reference, event.payload)
        elif event.kind == WebhookEventKind.PAYMENT_FAILED:
            await self.process_payment_failure(provider.name, event.provider_reference, event.payload)
        else:
            logger.info(
                "Unhandled webhook event",
                provider=provider.name.value,
                event_type=event.event_type
            )

        await self.cache.set(key, "processed", self.webhook_idempotency_ttl)
        return {"received": True}

    async def _find_by_reference(
        self,
        session: AsyncSession,
        provider: PaymentProviderName,
        reference: Optional[str]
    ) -> Optional[Payment]:
        if not reference:
            return None
        result = await session.execute(
            select(Payment).where(
                and_(
                    Payment.provider == provider.value,
                    Payment.provider_reference == reference,
                    Payment.type == PaymentType.PAYMENT.value,
                )
            )
        )
        return result.scalars().first()

    async def process_payment_success(
        self,
        provider: PaymentProviderName,
        reference: Optional[str],
        raw: Optional[Dict[str, Any]] = None
    ) -> Optional[Payment]:
        """Complete a payment and confirm its booking. Repeated calls are no-ops."""
        record: Optional[TransitionRecord] = None

        async with self.database.transaction() as session:
            payment = await self._find_by_reference(session, provider, reference)
            if payment is None:
                logger.error(
                    "Payment not found for reference",
                    provider=provider.value,
                    provider_reference=reference
                )
                return None
            if payment.status == PaymentStatus.COMPLETED.value:
                return payment

            payment.status = PaymentStatus.COMPLETED.value
            payment.processed_at = utcnow()
            if raw:
                payment.provider_response = {**(payment.provider_response or {}), "webhook": raw}

            booking = await session.get(Booking, payment.booking_id)
            booking.payment_status = BookingPaymentStatus.PAID.value
            if booking.status == BookingStatus.PENDING.value:
                record = await self.lifecycle.apply_transition(
                    session, booking, BookingStatus.CONFIRMED, None, "payment completed"
                )
            elif booking.status == BookingStatus.CANCELLED.value:
                # Captured after the stay was cancelled: queue it straight back
                late_refund = self.lifecycle.create_refund_record(
                    booking, "Payment received after cancellation", completed=payment
                )
                logger.warning(
                    "Payment completed on cancelled booking",
                    payment_id=str(payment.id),
                    booking_id=str(booking.id),
                    refund_payment_id=str(late_refund.id)
                )

        PAYMENT_EVENTS.labels(provider=provider.value, event="succeeded").inc()
        logger.info(
            "Payment completed",
            payment_id=str(payment.id),
            booking_id=str(payment.booking_id),
            provider=provider.value
        )

        if record is not None:
            await self.lifecycle.announce(record)
        else:
            await invalidate_booking_entries(self.cache, booking.id, booking.user_id)
        await notify_quietly(
            self.notifier,
            payment.user_id,
            NotificationType.PAYMENT_SUCCESS,
            "Your payment has been processed successfully!",
            data={"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
            booking_id=payment.booking_id,
        )
        return payment

    async def process_payment_failure(
        self,
        provider: PaymentProviderName,
        reference: Optional[str],
        raw: Optional[Dict[str, Any]] = None
    ) -> Optional[Payment]:
        async with self.database.transaction() as session:
            payment = await self._find_by_reference(session, provider, reference)
            if payment is None:
                logger.error(
                    "Payment not found for reference",
                    provider=provider.value,
                    provider_reference=reference
                )
                return None
            if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value):
                return payment

            payment.status = PaymentStatus.FAILED.value
            payment.processed_at = utcnow()
            if raw:
                payment.provider_response = {**(payment.provider_response or {}), "webhook": raw}

            booking = await session.get(Booking, payment.booking_id)
            if booking.payment_status != BookingPaymentStatus.PAID.value:
                booking.payment_status = BookingPaymentStatus.FAILED.value

        PAYMENT_EVENTS.labels(provider=provider.value, event="failed").inc()
        logger.warning(
            "Payment failed",
            payment_id=str(payment.id),
            booking_id=str(payment.booking_id),
            provider=provider.value
        )

        await invalidate_booking_entries(self.cache, booking.id, booking.user_id)
        await notify_quietly(
            self.notifier,
            payment.user_id,
            NotificationType.PAYMENT_FAILURE,
            "Your payment could not be processed. Please try again.",
            data={"payment_id": str(payment.id), "booking_id": str(payment.booking_id)},
            booking_id=payment.booking_id,
        )
        return payment

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def get_payment(self, actor: Actor, payment_id: UUID) -> Payment:
        async with self.database.session() as session:
            payment = await session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFound(payment_id)
        if not actor.is_admin and payment.user_id != actor.user_id:
            raise AccessDenied(payment_id, actor.user_id)
        return payment

    async def list_user_payments(
        self,
        actor: Actor,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[Payment], PaginationInfo]:
        """The actor's payments and refunds, newest first."""
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        owned = Payment.user_id == actor.user_id

        async with self.database.session() as session:
            total = await session.scalar(select(func.count()).select_from(Payment).where(owned))
            result = await session.execute(
                select(Payment)
                .where(owned)
                .order_by(Payment.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            payments = list(result.scalars().all())

        return payments, PaginationInfo.build(total or 0, page, limit)

    async def verify_payment(self, actor: Actor, payment_id: UUID) -> Payment:
        """Ask the provider for the payment's state and apply it locally."""
        payment = await self.get_payment(actor, payment_id)
        provider = self.provider(payment.provider)
        if not payment.provider_reference:
            raise PaymentNotFound(payment_id)

        verification = await provider.verify_payment(payment.provider_reference)
        logger.info(
            "Payment verified with provider",
            payment_id=str(payment_id),
            provider=provider.name.value,
            provider_status=verification.provider_status
        )

        if verification.success:
            return await self.process_payment_success(
                provider.name, payment.provider_reference, verification.raw
            )
        if verification.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return await self.process_payment_failure(
                provider.name, payment.provider_reference, verification.raw
            )
        return payment

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def _refundable_balance(self, session: AsyncSession, original: Payment) -> Decimal:
        refunded = await session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                and_(
                    Payment.original_payment_id == original.id,
                    Payment.type == PaymentType.REFUND.value,
                    Payment.status.in_(OPEN_REFUND_STATUSES),
                )
            )
        )
        return Decimal(original.amount) - Decimal(refunded or 0)

    async def refund_payment(self, actor: Actor, request: RefundRequest) -> Payment:
        """
        Refund a completed payment. Admin only.

        Raises:
            AccessDenied: If the actor is not an admin.
            PaymentNotFound: If the payment does not exist.
            RefundNotAllowed: If the payment is not a completed payment or
                the amount exceeds what is left to refund.
            PaymentProviderError: If the provider rejects the refund.
            LockTimeout: If another refund of the payment holds the lock too long.
        """
        if not actor.is_admin:
            raise AccessDenied(request.payment_id, actor.user_id)

        # The refund row is committed as processing before the provider call,
        # so the balance it claims is visible to every later refund.
        refund_id = uuid4()
        async with self.locks.hold(refund_lock_key(request.payment_id), self.lock_timeout):
            async with self.database.transaction() as session:
                original = (await session.execute(
                    select(Payment).where(Payment.id == request.payment_id).with_for_update()
                )).scalar_one_or_none()
                if original is None:
                    raise PaymentNotFound(request.payment_id)
                if original.type != PaymentType.PAYMENT.value:
                    raise RefundNotAllowed(original.id, "refunds cannot be refunded")
                if original.status != PaymentStatus.COMPLETED.value:
                    raise RefundNotAllowed(original.id, f"payment is {original.status}")
                provider = self.provider(original.provider)

                balance = await self._refundable_balance(session, original)
                amount = request.amount if request.amount is not None else balance
                if amount <= 0 or amount > balance:
                    raise RefundNotAllowed(original.id, f"refundable balance is {balance}")

                session.add(Payment(
                    id=refund_id,
                    booking_id=original.booking_id,
                    user_id=original.user_id,
                    type=PaymentType.REFUND.value,
                    status=PaymentStatus.PROCESSING.value,
                    provider=original.provider,
                    original_payment_id=original.id,
                    amount=amount,
                    currency=original.currency,
                    reason=request.reason,
                ))

        partial = amount < Decimal(original.amount)
        try:
            result = await provider.refund(
                original.provider_reference, amount if partial else None, original.currency
            )
        except PaymentProviderError:
            async with self.database.transaction() as session:
                await session.execute(
                    update(Payment)
                    .where(Payment.id == refund_id)
                    .values(
                        status=PaymentStatus.FAILED.value,
                        processed_at=utcnow(),
                        updated_at=utcnow()
                    )
                )
            logger.warning(
                "Refund rejected by provider",
                refund_id=str(refund_id),
                original_payment_id=str(original.id)
            )
            raise

        async with self.database.transaction() as session:
            refund = await session.get(Payment, refund_id)
            await self._apply_refund_result(session, refund, result)

        return await self._announce_refund(refund, result)

    async def pending_refund_ids(self, limit: int = 100) -> List[UUID]:
        async with self.database.session() as session:
            result = await session.execute(
                select(Payment.id)
                .where(
                    and_(
                        Payment.type == PaymentType.REFUND.value,
                        Payment.status == PaymentStatus.PENDING.value,
                    )
                )
                .order_by(Payment.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def process_pending_refund(self, refund_id: UUID) -> Optional[Payment]:
        """
        Send a pending refund row to its provider.

        The row is claimed (pending -> processing) before the provider call so
        two workers never refund the same row. A provider error puts the row
        back to pending and propagates.

        Returns:
            The refund row, or None if another worker already claimed it
        """
        async with self.database.transaction() as session:
            refund = await session.get(Payment, refund_id)
            if refund is None:
                raise PaymentNotFound(refund_id)
            if refund.type != PaymentType.REFUND.value or refund.original_payment_id is None:
                raise RefundNotAllowed(refund_id, "not a refund of a payment")
            original = await session.get(Payment, refund.original_payment_id)
            provider = self.provider(refund.provider)

            claimed = await session.execute(
                update(Payment)
                .where(and_(Payment.id == refund_id, Payment.status == PaymentStatus.PENDING.value))
                .values(status=PaymentStatus.PROCESSING.value, updated_at=utcnow())
            )
            if claimed.rowcount == 0:
                logger.info("Refund already claimed", refund_id=str(refund_id))
                return None

        partial = Decimal(refund.amount) < Decimal(original.amount)
        try:
            result = await provider.refund(
                original.provider_reference,
                refund.amount if partial else None,
                refund.currency
            )
        except PaymentProviderError:
            async with self.database.transaction() as session:
                await session.execute(
                    update(Payment)
                    .where(Payment.id == refund_id)
                    .values(status=PaymentStatus.PENDING.value, updated_at=utcnow())
                )
            logger.warning("Refund returned to queue after provider error", refund_id=str(refund_id))
            raise

        async with self.database.transaction() as session:
            refund = await session.get(Payment, refund_id)
            await self._apply_refund_result(session, refund, result)

        return await self._announce_refund(refund, result)

    async def _apply_refund_result(
        self,
        session: AsyncSession,
        refund: Payment,
        result: RefundResult
    ) -> None:
        refund.status = result.status.value
        refund.provider_reference = result.refund_reference
        refund.provider_response = result.raw
        if result.status in (PaymentStatus.COMPLETED, PaymentStatus.FAILED):
            refund.processed_at = utcnow()

        if not result.success:
            return

        await session.flush()
        original = await session.get(Payment, refund.original_payment_id)
        if await self._refundable_balance(session, original) <= 0:
            original.status = PaymentStatus.REFUNDED.value
            booking = await session.get(Booking, original.booking_id)
            booking.payment_status = BookingPaymentStatus.REFUNDED.value

    async def _announce_refund(self, refund: Payment, result: RefundResult) -> Payment:
        PAYMENT_EVENTS.labels(provider=refund.provider, event=f"refund_{result.status.value}").inc()
        logger.info(
            "Refund processed",
            refund_id=str(refund.id),
            original_payment_id=str(refund.original_payment_id),
            amount=str(refund.amount),
            status=result.status.value
        )

        await self.cache.delete(CachePrefix.booking(refund.booking_id))
        await self.cache.delete_pattern(CachePrefix.user_bookings(refund.user_id))
        if result.success:
            await notify_quietly(
                self.notifier,
                refund.user_id,
                NotificationType.REFUND_PROCESSED,
                f"A refund of {refund.amount} {refund.currency} has been processed.",
                data={
                    "refund_id": str(refund.id),
                    "original_payment_id": str(refund.original_payment_id),
                },
                booking_id=refund.booking_id,
            )
        return refund
