"""
Inbound notification classification and signature checks.
"""

import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from tabletop.errors import MalformedEvent, SignatureInvalid, UnsupportedProvider
from tabletop.gateways import GatewayCredentials, GatewayRegistry
from tabletop.pipeline.normalizer import GatewayEventNormalizer
from tabletop.schemas import OrderRefKind, PaymentEventKind, PaymentStatus

WEBHOOK_SECRET = "whsec_platform"
KEY_SECRET = "rzp_secret"


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _captured_body(event: str = "payment.captured", status: str = "captured") -> bytes:
    return json.dumps({
        "event": event,
        "payload": {
            "payment": {
                "entity": {"id": "pay_1", "order_id": "order_A", "status": status, "amount": 50000},
            },
        },
    }).encode()


@pytest.fixture
def registry():
    registry = GatewayRegistry()
    registry.register(GatewayCredentials(
        provider="razorpay", key_id="rzp_key", secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET,
    ))
    return registry


@pytest.fixture
def normalizer(registry):
    return GatewayEventNormalizer(registry)


# ══════════════════════════════════════════════════════════════
# WEBHOOKS
# ══════════════════════════════════════════════════════════════

class TestWebhooks:

    def test_signed_webhook_is_verified(self, normalizer):
        body = _captured_body()

        event = normalizer.normalize_webhook(
            "razorpay", body, {"X-Razorpay-Signature": _sign(WEBHOOK_SECRET, body)}, hotel_id="HTL-1"
        )

        assert event.kind == PaymentEventKind.WEBHOOK
        assert event.signature_verified
        assert event.hotel_id == "HTL-1"
        assert event.order_ref.kind == OrderRefKind.GATEWAY_ORDER_ID
        assert event.order_ref.value == "order_A"
        assert event.gateway_payment_id == "pay_1"
        assert event.mapped_status == PaymentStatus.PAID
        assert event.amount == Decimal("500.00")

    def test_event_id_falls_back_to_body_hash(self, normalizer):
        body = _captured_body()
        headers = {"x-razorpay-signature": _sign(WEBHOOK_SECRET, body)}

        first = normalizer.normalize_webhook("razorpay", body, headers)
        second = normalizer.normalize_webhook("razorpay", body, headers)

        assert first.event_id.startswith("evt_")
        assert first.event_id == second.event_id

    def test_gateway_event_id_is_kept(self, normalizer):
        body = _captured_body()
        headers = {"x-razorpay-signature": _sign(WEBHOOK_SECRET, body), "x-razorpay-event-id": "evt_rzp_9"}

        assert normalizer.normalize_webhook("razorpay", body, headers).event_id == "evt_rzp_9"

    def test_wrong_signature(self, normalizer):
        body = _captured_body()

        with pytest.raises(SignatureInvalid) as exc_info:
            normalizer.normalize_webhook("razorpay", body, {"x-razorpay-signature": _sign("guess", body)})

        assert exc_info.value.detail == "signature mismatch"

    def test_missing_signature(self, normalizer):
        with pytest.raises(SignatureInvalid) as exc_info:
            normalizer.normalize_webhook("razorpay", _captured_body(), {})

        assert exc_info.value.detail == "signature missing"

    def test_tampered_body(self, normalizer):
        body = _captured_body()
        signature = _sign(WEBHOOK_SECRET, body)

        with pytest.raises(SignatureInvalid):
            normalizer.normalize_webhook(
                "razorpay", _captured_body(status="failed"), {"x-razorpay-signature": signature}
            )

    def test_unhandled_event_type(self, normalizer):
        body = _captured_body(event="payment.dispute.created")

        with pytest.raises(MalformedEvent):
            normalizer.normalize_webhook("razorpay", body, {"x-razorpay-signature": _sign(WEBHOOK_SECRET, body)})

    def test_unknown_provider(self, normalizer):
        with pytest.raises(UnsupportedProvider):
            normalizer.normalize_webhook("bitpay", b"{}", {})

    def test_hotel_credentials_take_precedence(self, registry, normalizer):
        registry.register(
            GatewayCredentials(provider="razorpay", key_id="rzp_hotel", webhook_secret="whsec_hotel"),
            hotel_id="HTL-9",
        )
        body = _captured_body()
        headers = {"x-razorpay-signature": _sign("whsec_hotel", body)}

        assert normalizer.normalize_webhook("razorpay", body, headers, hotel_id="HTL-9").signature_verified
        with pytest.raises(SignatureInvalid):
            normalizer.normalize_webhook("razorpay", body, headers)


# ══════════════════════════════════════════════════════════════
# REDIRECT CALLBACKS
# ══════════════════════════════════════════════════════════════

class TestCallbacks:

    def _native(self, signature=None):
        return {
            "razorpay_order_id": "order_A",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": signature or _sign(KEY_SECRET, b"order_A|pay_1"),
        }

    def test_native_redirect_with_valid_signature(self, normalizer):
        event = normalizer.normalize_callback("razorpay", self._native(), method="POST")

        assert event.kind == PaymentEventKind.REDIRECT_CALLBACK
        assert event.signature_verified
        assert event.gateway_order_id == "order_A"
        assert event.gateway_payment_id == "pay_1"

    def test_native_redirect_with_bad_signature(self, normalizer):
        with pytest.raises(SignatureInvalid):
            normalizer.normalize_callback("razorpay", self._native(signature="0" * 64))

    def test_upstream_verified_payload_skips_redirect_check(self, normalizer):
        event = normalizer.normalize_callback("razorpay", self._native(signature="n/a"), verified_upstream=True)

        assert event.signature_verified

    def test_marker_in_params_is_not_trusted(self, normalizer):
        params = {**self._native(signature="n/a"), "webhook_verified": "true"}

        with pytest.raises(SignatureInvalid):
            normalizer.normalize_callback("razorpay", params)

    def test_internal_transaction_reference(self, normalizer):
        event = normalizer.normalize_callback(
            "razorpay", {"transactionId": "TXN-1", "code": "PAYMENT_ERROR"}, hotel_id="HTL-1"
        )

        assert event.order_ref.kind == OrderRefKind.TRANSACTION_ID
        assert event.order_ref.value == "TXN-1"
        assert event.signature_verified is False
        assert event.raw_status is None
        assert event.hotel_id == "HTL-1"

    def test_internal_order_reference(self, normalizer):
        event = normalizer.normalize_callback("razorpay", {"orderId": "ORD-1"})

        assert event.order_ref.kind == OrderRefKind.ORDER_ID

    def test_transaction_reference_wins_over_order_id(self, normalizer):
        event = normalizer.normalize_callback(
            "razorpay", {"order_id": "ORD-1", "merchantTransactionId": "TXN-1"}
        )

        assert event.order_ref.kind == OrderRefKind.TRANSACTION_ID

    def test_unrecognized_shape(self, normalizer):
        with pytest.raises(MalformedEvent) as exc_info:
            normalizer.normalize_callback("razorpay", {"foo": "bar", "amount": "10"})

        assert exc_info.value.available_keys == ["amount", "foo"]
