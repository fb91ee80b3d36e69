"""
Stripe adapter (Checkout Sessions).

The checkout session id is the gateway order id; the payment intent id is
the gateway payment id. SDK calls are blocking, so they run in a worker
thread and each call passes the hotel's own API key.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from tabletop.config import gateway_settings
from tabletop.errors import GatewayError, GatewayTimeout, MalformedEvent
from tabletop.gateways.base import GatewayClient, from_minor_units, to_minor_units
from tabletop.schemas import (
    GatewayAttempt,
    GatewayOrder,
    OrderRef,
    OrderRefKind,
    PaymentEvent,
    PaymentEventKind,
    RefundReceipt,
)

# Stripe event type -> raw status
HANDLED_EVENTS = {
    "checkout.session.completed": None,  # session.payment_status
    "checkout.session.async_payment_succeeded": "paid",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "expired",
    "payment_intent.payment_failed": "failed",
    "charge.refunded": "refunded",
}


class StripeGateway(GatewayClient):
    provider = "stripe"
    signature_header = "stripe-signature"

    async def _call(self, operation: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, api_key=self.credentials.secret, **kwargs)
        except stripe.APIConnectionError:
            self._logger.warning("gateway_timeout", operation=operation)
            raise GatewayTimeout(self.provider, operation)
        except stripe.StripeError as e:
            self._logger.error("stripe_error", operation=operation, error=str(e), error_type=type(e).__name__)
            raise GatewayError(self.provider, str(e), code=getattr(e, "code", None))

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: Optional[dict] = None,
    ) -> GatewayOrder:
        metadata = {**(metadata or {}), "receipt": receipt}
        frontend = self.credentials.extra.get("frontend_url", gateway_settings.FRONTEND_URL)
        session = await self._call(
            "create_order",
            stripe.checkout.Session.create,
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": to_minor_units(amount),
                    "product_data": {"name": f"Order {receipt}"},
                },
                "quantity": 1,
            }],
            success_url=f"{frontend}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend}/payment/cancel?receipt={receipt}",
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            idempotency_key=f"checkout_{receipt}",
        )
        return GatewayOrder(
            gateway_order_id=session.id,
            amount=amount,
            currency=currency,
            receipt=receipt,
            redirect_url=session.url,
        )

    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        session = await self._call(
            "fetch_status",
            stripe.checkout.Session.retrieve,
            gateway_order_id,
            expand=["payment_intent"],
        )
        intent = getattr(session, "payment_intent", None)
        if not intent:
            return []
        if isinstance(intent, str):
            intent = await self._call("fetch_status", stripe.PaymentIntent.retrieve, intent)

        last_error = getattr(intent, "last_payment_error", None)
        status = getattr(intent, "status", None) or "processing"
        if status == "requires_payment_method" and last_error:
            status = "failed"
        return [GatewayAttempt(
            attempt_id=intent.id,
            status=status,
            amount=from_minor_units(getattr(intent, "amount", None)),
            error_description=getattr(last_error, "message", None),
        )]

    async def refund(
        self,
        gateway_payment_id: str,
        amount: Optional[Decimal] = None,
        gateway_order_id: Optional[str] = None,
    ) -> RefundReceipt:
        params: dict[str, Any] = {"payment_intent": gateway_payment_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        refund = await self._call("refund", stripe.Refund.create, **params)
        return RefundReceipt(
            refund_id=refund.id,
            gateway_payment_id=gateway_payment_id,
            amount=from_minor_units(getattr(refund, "amount", None)) or amount or Decimal("0"),
            status=getattr(refund, "status", None) or "pending",
        )

    # =========================================================================
    # SIGNATURES & PARSING
    # =========================================================================

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not (signature and self.credentials.webhook_secret):
            return False
        try:
            stripe.Webhook.construct_event(payload, signature, self.credentials.webhook_secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            return False
        except ValueError:
            raise MalformedEvent("Stripe webhook body is not JSON")
        return True

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        try:
            event = json.loads(payload)
        except ValueError:
            raise MalformedEvent("Stripe webhook body is not JSON")

        event_type = event.get("type")
        if event_type not in HANDLED_EVENTS:
            raise MalformedEvent(f"Unhandled Stripe event: {event_type}", available_keys=sorted(event.keys()))

        obj = event.get("data", {}).get("object", {})
        metadata = obj.get("metadata") or {}

        if obj.get("object") == "checkout.session":
            gateway_order_id = obj.get("id")
            payment_id = obj.get("payment_intent")
            amount = obj.get("amount_total")
            raw_status = HANDLED_EVENTS[event_type] or obj.get("payment_status")
        else:
            gateway_order_id = metadata.get("checkout_session_id")
            payment_id = obj.get("payment_intent") or obj.get("id")
            amount = obj.get("amount_refunded") if event_type == "charge.refunded" else obj.get("amount")
            raw_status = HANDLED_EVENTS[event_type]

        if metadata.get("order_id"):
            order_ref = OrderRef(kind=OrderRefKind.ORDER_ID, value=metadata["order_id"])
        elif metadata.get("receipt"):
            order_ref = OrderRef(kind=OrderRefKind.TRANSACTION_ID, value=metadata["receipt"])
        elif gateway_order_id:
            order_ref = OrderRef(kind=OrderRefKind.GATEWAY_ORDER_ID, value=gateway_order_id)
        else:
            raise MalformedEvent("Stripe event without order reference", available_keys=sorted(obj.keys()))

        return PaymentEvent(
            event_id=event.get("id", ""),
            kind=PaymentEventKind.WEBHOOK,
            provider=self.provider,
            order_ref=order_ref,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=payment_id,
            signature_verified=True,
            raw_status=raw_status,
            amount=from_minor_units(amount),
        )
