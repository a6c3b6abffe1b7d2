"""
Payments
========

Provider adapters (Stripe, PayPal, Flutterwave) behind one interface, and the
payment service that applies intents, webhooks and refunds to bookings.
"""

from .base_provider import (
    PaymentIntent,
    PaymentProvider,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)
from .flutterwave_provider import FlutterwaveProvider
from .paypal_provider import PayPalProvider
from .service import PaymentService
from .stripe_provider import StripeProvider

__all__ = [
    "FlutterwaveProvider",
    "PaymentIntent",
    "PaymentProvider",
    "PaymentService",
    "PaymentVerification",
    "PayPalProvider",
    "RefundResult",
    "StripeProvider",
    "WebhookEvent",
    "WebhookEventKind",
]
