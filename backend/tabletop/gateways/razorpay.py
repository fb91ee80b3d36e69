"""
Razorpay adapter (REST over httpx, basic auth with key id / secret).

Webhook signature: HMAC-SHA256(webhook_secret, raw body), hex, in
``x-razorpay-signature``. Redirect signature: HMAC-SHA256(key_secret,
"<order_id>|<payment_id>").
"""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from tabletop.errors import MalformedEvent
from tabletop.gateways.base import (
    GatewayClient,
    constant_time_equals,
    from_minor_units,
    to_minor_units,
)
from tabletop.schemas import (
    GatewayAttempt,
    GatewayOrder,
    OrderRef,
    OrderRefKind,
    PaymentEvent,
    PaymentEventKind,
    RefundReceipt,
)

HANDLED_EVENTS = {"payment.captured", "payment.authorized", "payment.failed", "order.paid", "refund.processed"}


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway(GatewayClient):
    provider = "razorpay"
    signature_header = "x-razorpay-signature"

    @property
    def base_url(self) -> str:
        return self.credentials.extra.get("api_url", "https://api.razorpay.com/v1")

    @property
    def _auth(self) -> tuple[str, str]:
        return (self.credentials.key_id, self.credentials.secret)

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: Optional[dict] = None,
    ) -> GatewayOrder:
        data = await self._request(
            "POST",
            "/orders",
            "create_order",
            auth=self._auth,
            json={
                "amount": to_minor_units(amount),
                "currency": currency,
                "receipt": receipt,
                "notes": metadata or {},
            },
        )
        return GatewayOrder(
            gateway_order_id=data["id"],
            amount=amount,
            currency=currency,
            receipt=receipt,
            raw=data,
        )

    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        data = await self._request(
            "GET", f"/orders/{gateway_order_id}/payments", "fetch_status", auth=self._auth
        )
        attempts = [
            GatewayAttempt(
                attempt_id=item["id"],
                status=item.get("status", "created"),
                amount=from_minor_units(item.get("amount")),
                method=item.get("method"),
                error_description=item.get("error_description"),
                created_at=(
                    datetime.fromtimestamp(item["created_at"], tz=timezone.utc)
                    if item.get("created_at") else None
                ),
            )
            for item in data.get("items", [])
        ]
        attempts.sort(key=lambda a: a.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return attempts

    async def refund(
        self,
        gateway_payment_id: str,
        amount: Optional[Decimal] = None,
        gateway_order_id: Optional[str] = None,
    ) -> RefundReceipt:
        body = {} if amount is None else {"amount": to_minor_units(amount)}
        data = await self._request(
            "POST", f"/payments/{gateway_payment_id}/refund", "refund", auth=self._auth, json=body
        )
        return RefundReceipt(
            refund_id=data["id"],
            gateway_payment_id=gateway_payment_id,
            amount=from_minor_units(data.get("amount")) or amount or Decimal("0"),
            status=data.get("status", "processed"),
        )

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not self.credentials.webhook_secret:
            return False
        expected = _hmac_hex(self.credentials.webhook_secret, payload)
        return constant_time_equals(expected, signature)

    def verify_payment_signature(self, params: Mapping[str, Any]) -> bool:
        order_id = params.get("razorpay_order_id")
        payment_id = params.get("razorpay_payment_id")
        if not (order_id and payment_id and self.credentials.secret):
            return False
        expected = _hmac_hex(self.credentials.secret, f"{order_id}|{payment_id}".encode())
        return constant_time_equals(expected, params.get("razorpay_signature"))

    # =========================================================================
    # PARSING
    # =========================================================================

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        try:
            body = json.loads(payload)
        except ValueError:
            raise MalformedEvent("Razorpay webhook body is not JSON")

        event_type = body.get("event")
        if event_type not in HANDLED_EVENTS:
            raise MalformedEvent(
                f"Unhandled Razorpay event: {event_type}",
                available_keys=sorted(body.keys()),
            )

        entities = body.get("payload", {})
        payment = entities.get("payment", {}).get("entity", {})
        order = entities.get("order", {}).get("entity", {})

        gateway_order_id = payment.get("order_id") or order.get("id")
        if not gateway_order_id:
            raise MalformedEvent(
                "Razorpay webhook without order id",
                available_keys=sorted(entities.keys()),
            )

        if event_type == "order.paid":
            raw_status = "paid"
        elif event_type == "refund.processed":
            raw_status = "refunded"
        else:
            raw_status = payment.get("status") or event_type.split(".", 1)[1]

        return PaymentEvent(
            event_id=headers.get("x-razorpay-event-id", ""),
            kind=PaymentEventKind.WEBHOOK,
            provider=self.provider,
            order_ref=OrderRef(kind=OrderRefKind.GATEWAY_ORDER_ID, value=gateway_order_id),
            gateway_order_id=gateway_order_id,
            gateway_payment_id=payment.get("id"),
            signature_verified=True,
            raw_status=raw_status,
            amount=from_minor_units(payment.get("amount") or order.get("amount_paid")),
        )

    def parse_callback(self, params: Mapping[str, Any]) -> Optional[PaymentEvent]:
        order_id = params.get("razorpay_order_id")
        payment_id = params.get("razorpay_payment_id")
        if not (order_id and payment_id):
            return None
        # A valid checkout signature means the payment was at least authorized
        return PaymentEvent(
            kind=PaymentEventKind.REDIRECT_CALLBACK,
            provider=self.provider,
            order_ref=OrderRef(kind=OrderRefKind.GATEWAY_ORDER_ID, value=order_id),
            gateway_order_id=order_id,
            gateway_payment_id=payment_id,
            raw_status="authorized",
        )
