"""
Stripe Provider
===============

Stripe PaymentIntents through the official SDK. The SDK is synchronous, so
calls run in a worker thread. The API key is passed per call rather than set
globally on the module.
"""

import asyncio
from decimal import Decimal
from typing import Dict, Mapping, Optional

import stripe
import structlog

from ..errors import PaymentProviderError, WebhookSignatureError
from ..models import PaymentProviderName, PaymentStatus
from .base_provider import (
    PaymentIntent,
    PaymentProvider,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
    to_minor_units,
)

logger = structlog.get_logger(__name__)

# PaymentIntent status -> local payment status
INTENT_STATUS = {
    "succeeded": PaymentStatus.COMPLETED,
    "processing": PaymentStatus.PROCESSING,
    "canceled": PaymentStatus.CANCELLED,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PROCESSING,
}

REFUND_STATUS = {
    "succeeded": PaymentStatus.COMPLETED,
    "pending": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.CANCELLED,
}

WEBHOOK_EVENTS = {
    "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
}


class StripeProvider(PaymentProvider):
    def __init__(self, secret_key: str, webhook_secret: str, timeout: int = 30):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    @property
    def name(self) -> PaymentProviderName:
        return PaymentProviderName.STRIPE

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(
                "Stripe API error",
                error_type=type(e).__name__,
                error=str(e),
                http_status=e.http_status
            )
            raise PaymentProviderError(
                self.name.value,
                e.user_message or str(e),
                provider_status=e.http_status,
                response_body=e.http_body
            ) from e

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntent:
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency.lower(),
            automatic_payment_methods={"enabled": True},
            description=metadata.get("description"),
            metadata={
                "booking_id": metadata.get("booking_id", ""),
                "payment_id": metadata.get("payment_id", ""),
                "user_id": metadata.get("user_id", ""),
            },
            idempotency_key=metadata.get("payment_id"),
        )
        return PaymentIntent(
            provider_reference=intent["id"],
            status=intent["status"],
            client_secret=intent["client_secret"],
            raw={"id": intent["id"], "status": intent["status"]},
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        intent = await self._call(stripe.PaymentIntent.retrieve, reference)
        return PaymentVerification(
            status=INTENT_STATUS.get(intent["status"], PaymentStatus.PENDING),
            provider_status=intent["status"],
            amount=Decimal(intent["amount"]) / 100,
            currency=intent["currency"].upper(),
            raw={"id": intent["id"], "status": intent["status"]},
        )

    async def refund(
        self,
        reference: str,
        amount: Optional[Decimal],
        currency: str
    ) -> RefundResult:
        params = {"payment_intent": reference}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        refund = await self._call(stripe.Refund.create, **params)
        return RefundResult(
            refund_reference=refund["id"],
            status=REFUND_STATUS.get(refund["status"], PaymentStatus.PROCESSING),
            provider_status=refund["status"],
            raw={"id": refund["id"], "status": refund["status"]},
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str]
    ) -> WebhookEvent:
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not signature:
            raise WebhookSignatureError(self.name.value, "missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError:
            raise WebhookSignatureError(self.name.value, "invalid payload") from None
        except stripe.SignatureVerificationError:
            raise WebhookSignatureError(self.name.value) from None

        # StripeObject is not a dict; missing keys raise AttributeError
        data_object = event.data.object
        reference = getattr(data_object, "id", None)
        return WebhookEvent(
            event_id=event.id,
            event_type=event.type,
            kind=WEBHOOK_EVENTS.get(event.type, WebhookEventKind.IGNORED),
            provider_reference=reference,
            payload={"id": reference, "status": getattr(data_object, "status", None)},
        )
