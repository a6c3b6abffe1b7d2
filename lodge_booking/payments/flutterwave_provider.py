"""
Flutterwave Provider
====================

Flutterwave Standard (hosted checkout) over the v3 REST API.

The provider reference is our own ``tx_ref``; Flutterwave's numeric
transaction id is looked up by reference when verifying or refunding.
Webhooks carry the account's secret hash in the ``verif-hash`` header.
"""

import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import structlog

from ..errors import WebhookSignatureError
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

TRANSACTION_STATUS = {
    "successful": PaymentStatus.COMPLETED,
    "pending": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
}

REFUND_STATUS = {
    "completed": PaymentStatus.COMPLETED,
    "completed-mpgs": PaymentStatus.COMPLETED,
    "pending": PaymentStatus.PROCESSING,
    "failed": PaymentStatus.FAILED,
}


def transaction_reference(payment_id: str) -> str:
    return f"lodge_{payment_id.replace('-', '')}"


class FlutterwaveProvider(HttpPaymentProvider):
    def __init__(
        self,
        secret_key: str,
        secret_hash: str,
        frontend_url: str = "http://localhost:3000",
        timeout: int = 30
    ):
        super().__init__(timeout)
        self.secret_key = secret_key
        self.secret_hash = secret_hash
        self.frontend_url = frontend_url.rstrip("/")

    @property
    def name(self) -> PaymentProviderName:
        return PaymentProviderName.FLUTTERWAVE

    @property
    def base_url(self) -> str:
        return "https://api.flutterwave.com/v3"

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

    async def _api(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        response = await self._make_request(method, endpoint, **kwargs)
        return response.json().get("data") or {}

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntent:
        tx_ref = transaction_reference(metadata["payment_id"])
        data = await self._api(
            "POST",
            "/payments",
            json={
                "tx_ref": tx_ref,
                "amount": f"{Decimal(amount):.2f}",
                "currency": currency.upper(),
                "redirect_url": metadata.get("return_url") or f"{self.frontend_url}/payment/callback",
                "customer": {
                    "email": metadata.get("email"),
                    "name": metadata.get("name"),
                    "phonenumber": metadata.get("phone"),
                },
                "customizations": {
                    "title": "Hotel Booking Payment",
                    "description": metadata.get("description") or "Payment for hotel booking",
                },
                "meta": {
                    "booking_id": metadata.get("booking_id"),
                    "payment_id": metadata.get("payment_id"),
                },
            },
        )
        return PaymentIntent(
            provider_reference=tx_ref,
            status="pending",
            redirect_url=data.get("link"),
            raw={"tx_ref": tx_ref, "link": data.get("link")},
        )

    async def _transaction(self, reference: str) -> Dict[str, Any]:
        return await self._api(
            "GET", "/transactions/verify_by_reference", params={"tx_ref": reference}
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        data = await self._transaction(reference)
        status = data.get("status", "pending")
        return PaymentVerification(
            status=TRANSACTION_STATUS.get(status, PaymentStatus.PENDING),
            provider_status=status,
            amount=Decimal(str(data["amount"])) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            raw={"id": data.get("id"), "tx_ref": reference, "status": status},
        )

    async def refund(
        self,
        reference: str,
        amount: Optional[Decimal],
        currency: str
    ) -> RefundResult:
        transaction = await self._transaction(reference)
        body = {}
        if amount is not None:
            body["amount"] = f"{Decimal(amount):.2f}"

        data = await self._api("POST", f"/transactions/{transaction['id']}/refund", json=body)
        status = str(data.get("status", "pending")).lower()
        return RefundResult(
            refund_reference=str(data["id"]) if data.get("id") is not None else None,
            status=REFUND_STATUS.get(status, PaymentStatus.PROCESSING),
            provider_status=status,
            raw={"id": data.get("id"), "status": status, "transaction_id": transaction["id"]},
        )

    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str]
    ) -> WebhookEvent:
        normalized = {key.lower(): value for key, value in headers.items()}
        signature = normalized.get("verif-hash", "")
        if not self.secret_hash or not hmac.compare_digest(signature, self.secret_hash):
            raise WebhookSignatureError(self.name.value)

        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookSignatureError(self.name.value, "invalid payload") from None

        data = event.get("data", {})
        if event.get("event") == "charge.completed":
            kind = (
                WebhookEventKind.PAYMENT_SUCCEEDED
                if data.get("status") == "successful"
                else WebhookEventKind.PAYMENT_FAILED
            )
        else:
            kind = WebhookEventKind.IGNORED

        return WebhookEvent(
            event_id=str(data.get("id", "")),
            event_type=event.get("event", ""),
            kind=kind,
            provider_reference=data.get("tx_ref"),
            payload={"id": data.get("id"), "status": data.get("status")},
        )
