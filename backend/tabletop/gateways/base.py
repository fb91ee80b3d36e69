"""
Gateway client contract.

One adapter per provider. Adapters own the provider's wire format: request
signing, webhook signature verification and payload parsing. Everything
they hand back is provider-neutral (``GatewayOrder``, ``GatewayAttempt``,
``PaymentEvent``).
"""

import hmac
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from tabletop.config import settings
from tabletop.errors import GatewayError, GatewayTimeout
from tabletop.schemas import GatewayAttempt, GatewayOrder, OrderPayment, PaymentEvent, RefundReceipt


class GatewayCredentials(BaseModel):
    """Per-hotel (or platform) credentials for one provider."""

    provider: str
    key_id: str = ""
    secret: str = ""
    webhook_secret: str = ""
    merchant_id: str = ""
    salt_index: str = "1"
    production: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise."""
    return int((Decimal(amount) * 100).to_integral_value())


def from_minor_units(amount: Optional[int]) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def constant_time_equals(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode(), received.encode())


class GatewayClient(ABC):
    """Provider-agnostic payment gateway capability."""

    provider: str = ""
    signature_header: str = ""
    # Providers that use our transaction id as their order id
    receipt_is_order_id: bool = False

    def __init__(
        self,
        credentials: GatewayCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._logger = structlog.get_logger().bind(component=f"gateway.{self.provider}")

    # =========================================================================
    # OUTBOUND
    # =========================================================================

    @abstractmethod
    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: Optional[dict] = None,
    ) -> GatewayOrder:
        pass

    @abstractmethod
    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        """Payment attempts for a gateway order, newest first."""
        pass

    @abstractmethod
    async def refund(
        self,
        gateway_payment_id: str,
        amount: Optional[Decimal] = None,
        gateway_order_id: Optional[str] = None,
    ) -> RefundReceipt:
        """Refund a captured payment. ``gateway_order_id`` for providers keyed on it."""
        pass

    # =========================================================================
    # INBOUND
    # =========================================================================

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """Verify a webhook body against the provider's shared secret."""
        pass

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        """Turn a verified webhook body into a PaymentEvent. Raises MalformedEvent."""
        pass

    def verify_payment_signature(self, params: Mapping[str, Any]) -> bool:
        """Verify a browser redirect. Providers without a redirect signature return False."""
        return False

    def parse_callback(self, params: Mapping[str, Any]) -> Optional[PaymentEvent]:
        """Provider-native redirect shape, or None to fall back to internal references."""
        return None

    def status_key(self, payment: OrderPayment) -> Optional[str]:
        """Identifier to pass to ``fetch_status`` for a local payment."""
        if payment.gateway_order_id:
            return payment.gateway_order_id
        return payment.transaction_id if self.receipt_is_order_id else None

    def extract_signature(self, headers: Mapping[str, str], payload: bytes) -> Optional[str]:
        return headers.get(self.signature_header) if self.signature_header else None

    # =========================================================================
    # HTTP
    # =========================================================================

    @property
    def base_url(self) -> str:
        return ""

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> dict:
        client = await self._http()
        try:
            response = await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException:
            self._logger.warning("gateway_timeout", operation=operation)
            raise GatewayTimeout(self.provider, operation)
        except httpx.HTTPError as e:
            self._logger.error("gateway_http_error", operation=operation, error=str(e))
            raise GatewayError(self.provider, str(e))

        if response.status_code >= 400:
            self._logger.warning(
                "gateway_error_response",
                operation=operation,
                status_code=response.status_code,
            )
            raise GatewayError(
                self.provider,
                f"{operation} failed with HTTP {response.status_code}",
                code=str(response.status_code),
            )
        return response.json()

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
