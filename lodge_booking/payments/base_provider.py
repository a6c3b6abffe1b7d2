"""
Base Payment Provider
=====================

Abstract base class defining the interface for all payment provider
adapters. Each provider maps its API onto the same small set of operations
and result types, so the payment service never sees vendor formats.

Providers must:
- Create a payment intent/order/checkout and return its reference
- Verify a payment by reference
- Refund a completed payment (fully or partially)
- Verify and parse webhooks into a ``WebhookEvent``
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from ..errors import PaymentProviderError
from ..models import PaymentProviderName, PaymentStatus

logger = structlog.get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Amount in cents, as card APIs expect."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


@dataclass
class PaymentIntent:
    """Provider-side payment awaiting completion by the payer."""
    provider_reference: str
    status: str
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentVerification:
    status: PaymentStatus
    provider_status: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


@dataclass
class RefundResult:
    refund_reference: Optional[str]
    status: PaymentStatus
    provider_status: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.COMPLETED


class WebhookEventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"


@dataclass
class WebhookEvent:
    """Standardized webhook event from any provider."""
    event_id: str
    event_type: str
    kind: WebhookEventKind
    provider_reference: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """
    Abstract base class for all payment providers.

    Operations return normalized results; any provider-side failure is raised
    as ``PaymentProviderError`` and a bad webhook as ``WebhookSignatureError``.
    """

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    @property
    @abstractmethod
    def name(self) -> PaymentProviderName:
        """Return the provider name stored on payment rows."""
        pass

    async def close(self):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # ABSTRACT METHODS - Must be implemented by each provider
    # =========================================================================

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str]
    ) -> PaymentIntent:
        """
        Start a payment with the provider.

        Args:
            amount: Amount in major units (e.g. 1250.00)
            currency: ISO currency code
            metadata: booking_id, payment_id, payer details, return_url

        Returns:
            The provider reference and whatever the payer needs to continue
        """
        pass

    @abstractmethod
    async def verify_payment(self, reference: str) -> PaymentVerification:
        """Look up a payment by its provider reference."""
        pass

    @abstractmethod
    async def refund(
        self,
        reference: str,
        amount: Optional[Decimal],
        currency: str
    ) -> RefundResult:
        """
        Refund a completed payment.

        Args:
            reference: Provider reference of the original payment
            amount: Amount to refund; None refunds in full
            currency: Currency of the original payment
        """
        pass

    @abstractmethod
    async def parse_webhook(
        self,
        payload: bytes,
        headers: Mapping[str, str]
    ) -> WebhookEvent:
        """
        Verify a webhook's authenticity and parse it.

        Raises:
            WebhookSignatureError: If the signature does not verify.
        """
        pass


class HttpPaymentProvider(PaymentProvider):
    """Provider talking to a REST API over a shared httpx client."""

    def __init__(self, timeout: int = 30):
        super().__init__(timeout)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    @abstractmethod
    def base_url(self) -> str:
        """Return the base API URL for this provider."""
        pass

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json"
        }

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with error handling.

        Raises:
            PaymentProviderError: On transport errors and non-2xx responses
        """
        client = await self.get_client()
        provider = self.name.value

        try:
            response = await client.request(
                method=method,
                url=endpoint,
                json=json,
                params=params,
                **kwargs
            )
        except httpx.RequestError as e:
            logger.error(
                "HTTP request failed",
                provider=provider,
                endpoint=endpoint,
                error=str(e)
            )
            raise PaymentProviderError(provider, f"Request failed: {e}") from e

        if response.status_code in (401, 403):
            raise PaymentProviderError(
                provider,
                "Authentication failed - check provider credentials",
                provider_status=response.status_code,
                response_body=response.text
            )
        elif response.status_code == 404:
            raise PaymentProviderError(
                provider,
                f"Resource not found: {endpoint}",
                provider_status=404,
                response_body=response.text
            )
        elif response.status_code == 429:
            raise PaymentProviderError(
                provider,
                "Rate limit exceeded",
                provider_status=429,
                response_body=response.text
            )
        elif response.status_code >= 400:
            raise PaymentProviderError(
                provider,
                f"Request rejected with status {response.status_code}",
                provider_status=response.status_code,
                response_body=response.text
            )

        logger.debug(
            "API response",
            provider=provider,
            method=method,
            endpoint=endpoint,
            status_code=response.status_code
        )
        return response
