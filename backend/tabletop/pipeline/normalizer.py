"""
Gateway Event Normalizer
========================
Classifies inbound gateway notifications into ``PaymentEvent``.

Three inbound shapes:

    webhook            signed body, verified against the webhook secret
    redirect (native)  gateway payment id + order id + signature, verified
    redirect (internal) only our own order/transaction reference; unverified,
                        the orchestrator must ask the gateway before crediting

Anything else is a ``MalformedEvent``. A failed signature check raises
``SignatureInvalid`` and never reaches settlement.
"""

import hashlib
from typing import Any, Mapping, Optional

import structlog

from tabletop.errors import MalformedEvent, SignatureInvalid
from tabletop.gateways import GatewayRegistry
from tabletop.schemas import OrderRef, OrderRefKind, PaymentEvent, PaymentEventKind

logger = structlog.get_logger().bind(component="event_normalizer")

# Internal-reference redirect fields, in lookup order
_ORDER_ID_FIELDS = ("orderId", "order_id")
_TRANSACTION_ID_FIELDS = ("transactionId", "transaction_id", "merchantTransactionId")
_SUCCESS_CODES = {"PAYMENT_SUCCESS", "SUCCESS", "TXN_SUCCESS"}


def _first(params: Mapping[str, Any], fields: tuple[str, ...]) -> Optional[str]:
    for field in fields:
        value = params.get(field)
        if value:
            return str(value)
    return None


class GatewayEventNormalizer:

    def __init__(self, registry: GatewayRegistry):
        self.registry = registry

    def normalize_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        hotel_id: Optional[str] = None,
    ) -> PaymentEvent:
        client = self.registry.get(provider, hotel_id)
        headers = {k.lower(): v for k, v in headers.items()}

        signature = client.extract_signature(headers, raw_body)
        if not signature:
            logger.warning("webhook_signature_missing", provider=provider, hotel_id=hotel_id)
            raise SignatureInvalid(provider, "signature missing")
        if not client.verify_signature(raw_body, signature):
            logger.warning("webhook_signature_invalid", provider=provider, hotel_id=hotel_id)
            raise SignatureInvalid(provider, "signature mismatch")

        event = client.parse_webhook(raw_body, headers)
        updates = {"hotel_id": hotel_id, "signature_verified": True}
        if not event.event_id:
            updates["event_id"] = f"evt_{hashlib.sha256(raw_body).hexdigest()[:24]}"
        event = event.model_copy(update=updates)

        logger.info(
            "webhook_normalized",
            provider=provider,
            event_id=event.event_id,
            order_ref=str(event.order_ref),
            raw_status=event.raw_status,
        )
        return event

    def normalize_callback(
        self,
        provider: str,
        params: Mapping[str, Any],
        method: str = "GET",
        hotel_id: Optional[str] = None,
        verified_upstream: bool = False,
    ) -> PaymentEvent:
        """
        Classify a browser redirect.

        ``verified_upstream`` is for in-process callers replaying a payload
        whose webhook signature was already checked; it skips the redirect
        signature check.
        """
        client = self.registry.get(provider, hotel_id)

        event = client.parse_callback(params)
        if event is not None:
            if not verified_upstream and not client.verify_payment_signature(params):
                logger.warning("callback_signature_invalid", provider=provider, method=method)
                raise SignatureInvalid(provider, "redirect signature mismatch")
            event = event.model_copy(update={"hotel_id": hotel_id, "signature_verified": True})
            logger.info("callback_normalized", provider=provider, method=method, order_ref=str(event.order_ref))
            return event

        transaction_id = _first(params, _TRANSACTION_ID_FIELDS)
        order_id = _first(params, _ORDER_ID_FIELDS)
        if transaction_id:
            ref = OrderRef(kind=OrderRefKind.TRANSACTION_ID, value=transaction_id)
        elif order_id:
            ref = OrderRef(kind=OrderRefKind.ORDER_ID, value=order_id)
        else:
            logger.warning("callback_unrecognized", provider=provider, keys=sorted(params))
            raise MalformedEvent("unrecognized callback shape", available_keys=sorted(params))

        code = str(params.get("code") or params.get("status") or "").upper()
        if code and code not in _SUCCESS_CODES:
            logger.info("callback_non_success_code", provider=provider, code=code, order_ref=str(ref))

        # The redirect's own status is untrusted; settlement asks the gateway.
        event = PaymentEvent(
            kind=PaymentEventKind.REDIRECT_CALLBACK,
            provider=provider,
            hotel_id=hotel_id,
            order_ref=ref,
            signature_verified=False,
            raw_status=None,
        )
        logger.info("callback_normalized", provider=provider, method=method, order_ref=str(ref), internal=True)
        return event
