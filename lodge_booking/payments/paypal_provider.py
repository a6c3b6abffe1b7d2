"""
PayPal Provider
===============

PayPal Orders v2 REST API over httpx.

The provider reference is the order id. An approved order is captured on
verification; refunds go against the order's capture. Webhooks are checked
with PayPal's verify-webhook-signature endpoint.
"""

import json
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from ..errors import PaymentProviderError, WebhookSignatureError
from ..models import PaymentProviderName, PaymentStatus
from .base_provider import (
    HttpPaymentProvider,
    PaymentIntent,
    PaymentVerification,
    RefundResult,
    WebhookEvent,
    WebhookEventKind,
)

logger = structlog.get_logger(__name__)

ORDER_STATUS = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "APPROVED": PaymentStatus.PROCESSING,
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "VOIDED": PaymentStatus.CANCELLED,
}

REFUND_STATUS = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "PENDING": PaymentStatus.PROCESSING,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELLED,
}

WEBHOOK_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED": WebhookEventKind.PAYMENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": WebhookEventKind.PAYMENT_FAILED,
}

SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalProvider(HttpPaymentProvider):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        webhook_id: Optional[str] = None,
        frontend_url: str = "http://localhost:3000",
        timeout: int = 30
    ):
        super().__init__(timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.webhook_id = webhook_id
        self.frontend_url = frontend_url.rstrip("/")
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def name(self) -> PaymentProviderName:
        return PaymentProviderName.PAYPAL

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    async def _auth_headers(self) -> Dict[str, str]:
        # Refresh a minute early so a token never expires mid-request
        if self._access_token is None or time.monotonic() >= self._token_expires_at - 60:
            response = await self._make_request(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=httpx.BasicAuth(self.client_id, self.client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            token = response.json()
            self._access_token = token["access_token"]
            self._token_expires_at = time.monotonic() + int(token.get("expires_in", 0))
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _api(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        headers = await self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        response = await self._make_request(method, endpoint, headers=headers, **kwargs)
        return response.json() if response.content else {}

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntent:
        return_url = metadata.get("return_url") or f"{self.frontend_url}/payment/success"
        order = await self._api(
            "POST",
            "/v2/checkout/orders",
            json={
                "intent": "CAPTURE",
                "purchase_units": [{
                    "reference_id": metadata.get("booking_id"),
                    "custom_id": metadata.get("payment_id"),
                    "description": metadata.get("description") or "Hotel booking payment",
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": f"{Decimal(amount):.2f}",
                    },
                }],
                "application_context": {
                    "shipping_preference": "NO_SHIPPING",
                    "user_action": "PAY_NOW",
                    "return_url": return_url,
                    "cancel_url": f"{self.frontend_url}/payment/cancel",
                },
            },
            headers={
                "Prefer": "return=representation",
                "PayPal-Request-Id": metadata.get("payment_id", ""),
            },
        )
        approve = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return PaymentIntent(
            provider_reference=order["id"],
            status=order["status"],
            redirect_url=approve,
            raw={"id": order["id"], "status": order["status"]},
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        order = await self._api("GET", f"/v2/checkout/orders/{reference}")
        if order.get("status") == "APPROVED":
            order = await self._api("POST", f"/v2/checkout/orders/{reference}/capture", json={})

        amount = None
        currency = None
        units = order.get("purchase_units") or []
        if units and "amount" in units[0]:
            amount = Decimal(units[0]["amount"]["value"])
            currency = units[0]["amount"]["currency_code"]

        return PaymentVerification(
            status=ORDER_STATUS.get(order.get("status"), PaymentStatus.PENDING),
            provider_status=order.get("status", "UNKNOWN"),
            amount=amount,
            currency=currency,
            raw={"id": order.get("id"), "status": order.get("status")},
        )

    async def _capture_id(self, order_id: str) -> str:
        order = await self._api("GET", f"/v2/checkout/orders/{order_id}")
        for unit in order.get("purchase_units", []):
            for capture in unit.get("payments", {}).get("captures", []):
                return capture["id"]
        raise PaymentProviderError(self.name.value, f"Order {order_id} has no capture to refund")

    async def refund(
        self,
        reference: str,
        amount: Optional[Decimal],
        currency: str
    ) -> RefundResult:
        capture_id = await self._capture_id(reference)
        body = {}
        if amount is not None:
            body["amount"] = {"value": f"{Decimal(amount):.2f}", "currency_code": currency.upper()}

        refund = await self._api("POST", f"/v2/payments/captures/{capture_id}/refund", json=body)
        return RefundResult(
            refund_reference=refund.get("id"),
            status=REFUND_STATUS.get(refund.get("status"), PaymentStatus.PROCESSING),
            provider_status=refund.get("status", "UNKNOWN"),
            raw={"id": refund.get("id"), "status": refund.get("status"), "capture_id": capture_id},
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str]
    ) -> WebhookEvent:
        if not self.webhook_id:
            raise WebhookSignatureError(self.name.value, "webhook id is not configured")

        normalized = {key.lower(): value for key, value in headers.items()}
        missing = [header for header in SIGNATURE_HEADERS.values() if header not in normalized]
        if missing:
            raise WebhookSignatureError(self.name.value, f"missing headers: {', '.join(missing)}")

        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookSignatureError(self.name.value, "invalid payload") from None

        verification = await self._api(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                **{field: normalized[header] for field, header in SIGNATURE_HEADERS.items()},
                "webhook_id": self.webhook_id,
                "webhook_event": event,
            },
        )
        if verification.get("verification_status") != "SUCCESS":
            raise WebhookSignatureError(self.name.value)

        resource = event.get("resource", {})
        related = resource.get("supplementary_data", {}).get("related_ids", {})
        return WebhookEvent(
            event_id=event.get("id", ""),
            event_type=event.get("event_type", ""),
            kind=WEBHOOK_EVENTS.get(event.get("event_type"), WebhookEventKind.IGNORED),
            provider_reference=related.get("order_id") or resource.get("id"),
            payload={"id": resource.get("id"), "status": resource.get("status")},
        )
