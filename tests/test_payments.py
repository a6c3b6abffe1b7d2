import asyncio
import json
from datetime import date
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import select

from lodge_booking.errors import (
    AccessDenied,
    PaymentNotPayable,
    PaymentProviderError,
    RefundNotAllowed,
    UnsupportedPaymentProvider,
    WebhookSignatureError,
)
from lodge_booking.models import (
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    NotificationType,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    PaymentType,
)
from lodge_booking.payments import (
    PaymentIntent,
    PaymentProvider,
    PaymentService,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)
from lodge_booking.schemas import PaymentIntentRequest, RefundRequest


class FakeProvider(PaymentProvider):
    """In-memory provider; webhooks are JSON signed with a fixed header."""

    def __init__(self):
        super().__init__()
        self.refunds: List[tuple] = []
        self.refund_status = PaymentStatus.COMPLETED
        self.refund_error: Optional[PaymentProviderError] = None
        self.verified_status = PaymentStatus.COMPLETED
        self.refund_delay = 0.0

    @property
    def name(self) -> PaymentProviderName:
        return PaymentProviderName.STRIPE

    async def create_intent(self, amount, currency, metadata):
        reference = f"pi_{metadata['payment_id'][:8]}"
        return PaymentIntent(
            provider_reference=reference,
            status="requires_payment_method",
            client_secret=f"{reference}_secret",
            raw={"id": reference},
        )

    async def verify_payment(self, reference):
        return PaymentVerification(
            status=self.verified_status,
            provider_status=self.verified_status.value,
            raw={"id": reference},
        )

    async def refund(self, reference, amount, currency):
        await asyncio.sleep(self.refund_delay)
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((reference, amount, currency))
        return RefundResult(
            refund_reference=f"re_{len(self.refunds)}",
            status=self.refund_status,
            provider_status=self.refund_status.value,
        )

    async def parse_webhook(self, payload, headers):
        if headers.get("x-test-signature") != "ok":
            raise WebhookSignatureError(self.name.value)
        body = json.loads(payload)
        return WebhookEvent(
            event_id=body["id"],
            event_type=body["type"],
            kind=WebhookEventKind(body["type"]),
            provider_reference=body["reference"],
            payload=body,
        )


def webhook(event_id, kind, reference):
    return json.dumps({"id": event_id, "type": kind.value, "reference": reference}).encode()


SIGNED = {"x-test-signature": "ok"}


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def payments(database, cache, notifier, lifecycle, locks, provider):
    return PaymentService(
        database,
        cache,
        notifier,
        lifecycle,
        {PaymentProviderName.STRIPE: provider},
        locks=locks,
        lock_timeout=2.0,
    )


@pytest.fixture
async def booking(bookings, seed, booking_request):
    return await bookings.create_booking(
        seed.user_id, booking_request(seed, date(2024, 1, 10), date(2024, 1, 12))
    )


async def pay(payments, seed, booking, event_id="evt_1"):
    intent = await payments.create_payment_intent(
        seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
    )
    await payments.handle_webhook(
        "stripe",
        webhook(event_id, WebhookEventKind.PAYMENT_SUCCEEDED, intent.provider_reference),
        SIGNED,
    )
    return intent


async def load(database, model, id):
    async with database.session() as session:
        return await session.get(model, id)


class TestPaymentIntents:
    async def test_records_pending_payment(self, payments, database, seed, booking):
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )

        assert intent.amount == Decimal("2400.00")
        assert intent.client_secret == f"{intent.provider_reference}_secret"
        payment = await load(database, Payment, intent.payment_id)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.provider_reference == intent.provider_reference
        assert payment.booking_id == booking.id

    async def test_unconfigured_provider(self, payments, seed, booking):
        with pytest.raises(UnsupportedPaymentProvider):
            await payments.create_payment_intent(
                seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="paypal")
            )

    async def test_cancelled_booking_is_not_payable(self, payments, lifecycle, seed, booking):
        await lifecycle.cancel_booking(seed.actor, booking.id)

        with pytest.raises(PaymentNotPayable):
            await payments.create_payment_intent(
                seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
            )

    async def test_paid_booking_is_not_payable_twice(self, payments, seed, booking):
        await pay(payments, seed, booking)

        with pytest.raises(PaymentNotPayable):
            await payments.create_payment_intent(
                seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
            )

    async def test_foreign_booking(self, payments, make_seed, booking):
        stranger = await make_seed(name="Elsewhere")
        with pytest.raises(AccessDenied):
            await payments.create_payment_intent(
                stranger.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
            )


class TestWebhooks:
    async def test_success_confirms_booking(self, payments, database, notifier, seed, booking):
        intent = await pay(payments, seed, booking)

        payment = await load(database, Payment, intent.payment_id)
        stored = await load(database, Booking, booking.id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.processed_at is not None
        assert stored.status == BookingStatus.CONFIRMED.value
        assert stored.payment_status == BookingPaymentStatus.PAID.value
        assert len(notifier.of_type(NotificationType.PAYMENT_SUCCESS)) == 1
        assert len(notifier.of_type(NotificationType.BOOKING_STATUS_CHANGE)) == 1

    async def test_duplicate_event_is_ignored(self, payments, notifier, seed, booking):
        intent = await pay(payments, seed, booking, event_id="evt_dup")

        result = await payments.handle_webhook(
            "stripe",
            webhook("evt_dup", WebhookEventKind.PAYMENT_SUCCEEDED, intent.provider_reference),
            SIGNED,
        )

        assert result == {"received": True, "duplicate": True}
        assert len(notifier.of_type(NotificationType.PAYMENT_SUCCESS)) == 1

    async def test_redelivered_success_under_new_event_id_is_a_no_op(
        self, payments, notifier, seed, booking
    ):
        intent = await pay(payments, seed, booking)
        await payments.handle_webhook(
            "stripe",
            webhook("evt_2", WebhookEventKind.PAYMENT_SUCCEEDED, intent.provider_reference),
            SIGNED,
        )
        assert len(notifier.of_type(NotificationType.BOOKING_STATUS_CHANGE)) == 1

    async def test_failure_leaves_booking_pending(self, payments, database, notifier, seed, booking):
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )

        await payments.handle_webhook(
            "stripe",
            webhook("evt_f", WebhookEventKind.PAYMENT_FAILED, intent.provider_reference),
            SIGNED,
        )

        payment = await load(database, Payment, intent.payment_id)
        stored = await load(database, Booking, booking.id)
        assert payment.status == PaymentStatus.FAILED.value
        assert stored.status == BookingStatus.PENDING.value
        assert stored.payment_status == BookingPaymentStatus.FAILED.value
        assert len(notifier.of_type(NotificationType.PAYMENT_FAILURE)) == 1

    async def test_payment_after_cancellation_is_queued_for_refund(
        self, payments, lifecycle, database, seed, booking
    ):
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )
        await lifecycle.cancel_booking(seed.actor, booking.id)

        await payments.handle_webhook(
            "stripe",
            webhook("evt_late", WebhookEventKind.PAYMENT_SUCCEEDED, intent.provider_reference),
            SIGNED,
        )

        stored = await load(database, Booking, booking.id)
        assert stored.status == BookingStatus.CANCELLED.value
        [refund_id] = await payments.pending_refund_ids()
        refund = await load(database, Payment, refund_id)
        assert refund.original_payment_id == intent.payment_id
        assert refund.booking_id == booking.id
        assert refund.amount == Decimal("2400.00")

        await payments.process_pending_refund(refund_id)
        stored = await load(database, Booking, booking.id)
        assert stored.payment_status == BookingPaymentStatus.REFUNDED.value

    async def test_bad_signature(self, payments, booking):
        with pytest.raises(WebhookSignatureError):
            await payments.handle_webhook(
                "stripe", webhook("evt_x", WebhookEventKind.PAYMENT_SUCCEEDED, "pi_x"), {}
            )

    async def test_unknown_reference_is_acknowledged(self, payments):
        result = await payments.handle_webhook(
            "stripe", webhook("evt_u", WebhookEventKind.PAYMENT_SUCCEEDED, "pi_unknown"), SIGNED
        )
        assert result == {"received": True}


class TestVerifyPayment:
    async def test_applies_provider_state(self, payments, database, seed, booking):
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )

        payment = await payments.verify_payment(seed.actor, intent.payment_id)

        assert payment.status == PaymentStatus.COMPLETED.value
        assert (await load(database, Booking, booking.id)).status == BookingStatus.CONFIRMED.value

    async def test_still_pending(self, payments, provider, seed, booking):
        provider.verified_status = PaymentStatus.PENDING
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )

        payment = await payments.verify_payment(seed.actor, intent.payment_id)
        assert payment.status == PaymentStatus.PENDING.value


class TestUserPayments:
    async def test_lists_own_payments_and_refunds(self, payments, make_seed, seed, booking):
        intent = await pay(payments, seed, booking)
        await payments.refund_payment(
            seed.admin, RefundRequest(payment_id=intent.payment_id, amount=Decimal("400.00"))
        )

        listed, pagination = await payments.list_user_payments(seed.actor)

        assert {p.type for p in listed} == {PaymentType.PAYMENT.value, PaymentType.REFUND.value}
        assert pagination.total == 2
        assert not pagination.has_next

        stranger = await make_seed(name="Elsewhere")
        listed, pagination = await payments.list_user_payments(stranger.actor)
        assert listed == []
        assert pagination.total == 0

    async def test_pagination(self, payments, seed, booking):
        intent = await pay(payments, seed, booking)
        await payments.refund_payment(
            seed.admin, RefundRequest(payment_id=intent.payment_id, amount=Decimal("400.00"))
        )

        listed, pagination = await payments.list_user_payments(seed.actor, page=1, limit=1)

        assert len(listed) == 1
        assert pagination.pages == 2
        assert pagination.has_next


class TestAdminRefunds:
    async def test_partial_then_remaining_refund(
        self, payments, provider, database, seed, booking
    ):
        intent = await pay(payments, seed, booking)

        first = await payments.refund_payment(
            seed.admin, RefundRequest(payment_id=intent.payment_id, amount=Decimal("400.00"))
        )
        assert first.type == PaymentType.REFUND.value
        assert first.status == PaymentStatus.COMPLETED.value
        assert (await load(database, Payment, intent.payment_id)).status == PaymentStatus.COMPLETED.value

        await payments.refund_payment(seed.admin, RefundRequest(payment_id=intent.payment_id))

        assert provider.refunds == [
            (intent.provider_reference, Decimal("400.00"), "ZAR"),
            (intent.provider_reference, Decimal("2000.00"), "ZAR"),
        ]
        original = await load(database, Payment, intent.payment_id)
        stored = await load(database, Booking, booking.id)
        assert original.status == PaymentStatus.REFUNDED.value
        assert stored.payment_status == BookingPaymentStatus.REFUNDED.value

    async def test_cannot_exceed_balance(self, payments, seed, booking):
        intent = await pay(payments, seed, booking)

        with pytest.raises(RefundNotAllowed):
            await payments.refund_payment(
                seed.admin, RefundRequest(payment_id=intent.payment_id, amount=Decimal("2400.01"))
            )

    async def test_pending_payment_cannot_be_refunded(self, payments, seed, booking):
        intent = await payments.create_payment_intent(
            seed.actor, PaymentIntentRequest(booking_id=booking.id, provider="stripe")
        )
        with pytest.raises(RefundNotAllowed):
            await payments.refund_payment(seed.admin, RefundRequest(payment_id=intent.payment_id))

    async def test_admin_only(self, payments, seed, booking):
        intent = await pay(payments, seed, booking)
        with pytest.raises(AccessDenied):
            await payments.refund_payment(seed.actor, RefundRequest(payment_id=intent.payment_id))

    async def test_concurrent_full_refunds_pay_out_once(
        self, payments, provider, database, seed, booking
    ):
        intent = await pay(payments, seed, booking)
        provider.refund_delay = 0.05
        request = RefundRequest(payment_id=intent.payment_id)

        results = await asyncio.gather(
            payments.refund_payment(seed.admin, request),
            payments.refund_payment(seed.admin, request),
            return_exceptions=True,
        )

        assert sorted(type(r).__name__ for r in results) == ["Payment", "RefundNotAllowed"]
        assert provider.refunds == [(intent.provider_reference, None, "ZAR")]
        async with database.session() as session:
            refunds = (await session.execute(
                select(Payment).where(Payment.type == PaymentType.REFUND.value)
            )).scalars().all()
        assert [r.status for r in refunds] == [PaymentStatus.COMPLETED.value]

    async def test_provider_rejection_frees_the_balance(
        self, payments, provider, database, seed, booking
    ):
        intent = await pay(payments, seed, booking)
        provider.refund_error = PaymentProviderError("stripe", "charge already refunded")

        with pytest.raises(PaymentProviderError):
            await payments.refund_payment(
                seed.admin, RefundRequest(payment_id=intent.payment_id, amount=Decimal("400.00"))
            )

        async with database.session() as session:
            failed = (await session.execute(
                select(Payment).where(Payment.type == PaymentType.REFUND.value)
            )).scalar_one()
        assert failed.status == PaymentStatus.FAILED.value
        assert failed.processed_at is not None

        provider.refund_error = None
        refund = await payments.refund_payment(
            seed.admin, RefundRequest(payment_id=intent.payment_id)
        )
        assert refund.amount == Decimal("2400.00")
        assert refund.status == PaymentStatus.COMPLETED.value


class TestPendingRefunds:
    async def pending_refund(self, payments, lifecycle, database, seed, booking):
        await pay(payments, seed, booking)
        await lifecycle.cancel_booking(seed.actor, booking.id)
        [refund_id] = await payments.pending_refund_ids()
        return refund_id

    async def test_cancellation_refund_is_sent_once(
        self, payments, provider, lifecycle, database, notifier, seed, booking
    ):
        refund_id = await self.pending_refund(payments, lifecycle, database, seed, booking)

        refund = await payments.process_pending_refund(refund_id)

        assert refund.status == PaymentStatus.COMPLETED.value
        assert refund.provider_reference == "re_1"
        assert len(provider.refunds) == 1
        assert provider.refunds[0][1] is None
        assert await payments.pending_refund_ids() == []
        assert await payments.process_pending_refund(refund_id) is None
        assert len(provider.refunds) == 1
        assert len(notifier.of_type(NotificationType.REFUND_PROCESSED)) == 1

        stored = await load(database, Booking, booking.id)
        assert stored.payment_status == BookingPaymentStatus.REFUNDED.value

    async def test_provider_error_requeues_refund(
        self, payments, provider, lifecycle, database, seed, booking
    ):
        refund_id = await self.pending_refund(payments, lifecycle, database, seed, booking)
        provider.refund_error = PaymentProviderError("stripe", "card network unavailable")

        with pytest.raises(PaymentProviderError):
            await payments.process_pending_refund(refund_id)

        assert (await load(database, Payment, refund_id)).status == PaymentStatus.PENDING.value
        assert await payments.pending_refund_ids() == [refund_id]

    async def test_provider_still_processing(
        self, payments, provider, lifecycle, database, seed, booking
    ):
        refund_id = await self.pending_refund(payments, lifecycle, database, seed, booking)
        provider.refund_status = PaymentStatus.PROCESSING

        refund = await payments.process_pending_refund(refund_id)

        assert refund.status == PaymentStatus.PROCESSING.value
        async with database.session() as session:
            original = (await session.execute(
                select(Payment).where(Payment.type == PaymentType.PAYMENT.value)
            )).scalar_one()
        assert original.status == PaymentStatus.COMPLETED.value
