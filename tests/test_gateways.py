"""
Gateway adapters: signing schemes, status fetch over httpx, registry lookup.
"""

import base64
import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest

from tabletop.errors import GatewayError, GatewayTimeout, MalformedEvent, UnsupportedProvider
from tabletop.gateways import (
    GatewayCredentials,
    GatewayRegistry,
    PaytmGateway,
    PhonePeGateway,
    RazorpayGateway,
    StripeGateway,
)
from tabletop.gateways.base import from_minor_units, to_minor_units
from tabletop.gateways.paytm import generate_checksum
from tabletop.pipeline.normalizer import GatewayEventNormalizer
from tabletop.schemas import OrderPayment, OrderRefKind, PaymentStatus


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestMinorUnits:

    def test_round_trip_paise(self):
        assert to_minor_units(Decimal("499.99")) == 49999
        assert from_minor_units(49999) == Decimal("499.99")
        assert from_minor_units(None) is None


# ══════════════════════════════════════════════════════════════
# RAZORPAY
# ══════════════════════════════════════════════════════════════

class TestRazorpay:

    def _gateway(self, handler):
        return RazorpayGateway(
            GatewayCredentials(provider="razorpay", key_id="rzp_key", secret="rzp_secret",
                               extra={"api_url": "https://rzp.test/v1"}),
            http_client=_mock_client(handler),
        )

    async def test_fetch_status_newest_first(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"items": [
                {"id": "pay_old", "status": "failed", "amount": 50000, "created_at": 1700000000,
                 "error_description": "card declined"},
                {"id": "pay_new", "status": "captured", "amount": 50000, "created_at": 1700000600},
            ]})

        attempts = await self._gateway(handler).fetch_status("order_A")

        assert seen["url"] == "https://rzp.test/v1/orders/order_A/payments"
        assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_key:rzp_secret").decode()
        assert [a.attempt_id for a in attempts] == ["pay_new", "pay_old"]
        assert attempts[0].mapped_status == PaymentStatus.PAID
        assert attempts[1].error_description == "card declined"

    async def test_error_response(self):
        gateway = self._gateway(lambda request: httpx.Response(502, json={"error": "bad gateway"}))

        with pytest.raises(GatewayError) as exc_info:
            await gateway.fetch_status("order_A")

        assert exc_info.value.code == "502"
        assert not exc_info.value.retryable

    async def test_transport_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(GatewayTimeout) as exc_info:
            await self._gateway(handler).fetch_status("order_A")

        assert exc_info.value.retryable

    async def test_partial_refund_in_paise(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "rfnd_1", "amount": 20000, "status": "processed"})

        receipt = await self._gateway(handler).refund("pay_1", Decimal("200"))

        assert bodies == [{"amount": 20000}]
        assert receipt.amount == Decimal("200.00")

    def test_status_key_needs_gateway_order(self):
        gateway = self._gateway(lambda request: httpx.Response(200))

        assert gateway.status_key(OrderPayment(transaction_id="TXN-1")) is None
        assert gateway.status_key(OrderPayment(transaction_id="TXN-1", gateway_order_id="order_A")) == "order_A"


# ══════════════════════════════════════════════════════════════
# PHONEPE
# ══════════════════════════════════════════════════════════════

class TestPhonePe:

    SALT = "salt-key"

    def _gateway(self, handler=None):
        return PhonePeGateway(
            GatewayCredentials(provider="phonepe", merchant_id="MERCHANT", secret=self.SALT, salt_index="1"),
            http_client=_mock_client(handler or (lambda request: httpx.Response(200, json={}))),
        )

    def _webhook(self, salt_index="1"):
        response = base64.b64encode(json.dumps({
            "code": "PAYMENT_SUCCESS",
            "data": {"merchantTransactionId": "TXN-1", "transactionId": "T900", "amount": 50000},
        }).encode()).decode()
        body = json.dumps({"response": response}).encode()
        signature = hashlib.sha256((response + self.SALT).encode()).hexdigest() + f"###{salt_index}"
        return body, signature

    def test_webhook_signature_and_parse(self):
        gateway = self._gateway()
        body, signature = self._webhook()

        assert gateway.verify_signature(body, signature)
        event = gateway.parse_webhook(body, {})
        assert event.order_ref.kind == OrderRefKind.TRANSACTION_ID
        assert event.order_ref.value == "TXN-1"
        assert event.gateway_payment_id == "T900"
        assert event.mapped_status == PaymentStatus.PAID

    def test_wrong_salt_index_rejected(self):
        body, signature = self._webhook(salt_index="2")

        assert not self._gateway().verify_signature(body, signature)

    def test_non_string_envelope_is_malformed(self):
        body = json.dumps({"response": 123}).encode()

        with pytest.raises(MalformedEvent):
            self._gateway().verify_signature(body, "abc###1")
        with pytest.raises(MalformedEvent):
            self._gateway().parse_webhook(body, {})

    @pytest.mark.parametrize("decoded", [[1, 2], "PAYMENT_SUCCESS", {"data": ["TXN-1"]}])
    def test_envelope_must_decode_to_an_object(self, decoded):
        response = base64.b64encode(json.dumps(decoded).encode()).decode()
        body = json.dumps({"response": response}).encode()

        with pytest.raises(MalformedEvent):
            self._gateway().parse_webhook(body, {})

    async def test_status_request_is_signed(self):
        seen = {}

        def handler(request):
            seen["verify"] = request.headers["x-verify"]
            seen["path"] = request.url.path
            return httpx.Response(200, json={
                "success": True,
                "code": "PAYMENT_SUCCESS",
                "data": {"transactionId": "T900", "amount": 50000},
            })

        attempts = await self._gateway(handler).fetch_status("TXN-1")

        endpoint = "/pg/v1/status/MERCHANT/TXN-1"
        assert seen["path"].endswith(endpoint)
        assert seen["verify"] == hashlib.sha256((endpoint + self.SALT).encode()).hexdigest() + "###1"
        assert attempts[0].attempt_id == "T900"
        assert attempts[0].mapped_status == PaymentStatus.PAID

    async def test_unknown_transaction_has_no_attempts(self):
        gateway = self._gateway(lambda request: httpx.Response(
            200, json={"success": False, "code": "TRANSACTION_NOT_FOUND"}
        ))

        assert await gateway.fetch_status("TXN-1") == []

    async def test_refund_needs_amount(self):
        with pytest.raises(GatewayError):
            await self._gateway().refund("T900")

    def test_status_key_is_transaction_id(self):
        assert self._gateway().status_key(OrderPayment(transaction_id="TXN-1")) == "TXN-1"


# ══════════════════════════════════════════════════════════════
# PAYTM
# ══════════════════════════════════════════════════════════════

class TestPaytm:

    KEY = "merchant-key"

    def _form(self, **overrides) -> dict:
        fields = {"ORDERID": "TXN-1", "STATUS": "TXN_SUCCESS", "TXNID": "PT1", "TXNAMOUNT": "500.00"}
        fields.update(overrides)
        return fields

    def test_checksum_is_sorted_pairs_plus_key(self):
        expected = hashlib.sha256(b"A=1&B=2" + self.KEY.encode()).hexdigest()

        assert generate_checksum({"B": 2, "A": 1}, self.KEY) == expected

    def test_form_webhook_through_normalizer(self):
        registry = GatewayRegistry()
        registry.register(GatewayCredentials(provider="paytm", merchant_id="MID", secret=self.KEY))
        fields = self._form()
        fields["CHECKSUMHASH"] = generate_checksum(fields, self.KEY)
        body = "&".join(f"{k}={v}" for k, v in fields.items()).encode()

        event = GatewayEventNormalizer(registry).normalize_webhook("paytm", body, {})

        assert event.signature_verified
        assert event.order_ref.value == "TXN-1"
        assert event.mapped_status == PaymentStatus.PAID
        assert event.amount == Decimal("500.00")

    def test_tampered_form_fails(self):
        gateway = PaytmGateway(GatewayCredentials(provider="paytm", merchant_id="MID", secret=self.KEY))
        fields = self._form()
        fields["CHECKSUMHASH"] = generate_checksum(fields, self.KEY)
        fields["TXNAMOUNT"] = "1.00"

        assert not gateway.verify_fields(fields)

    def test_redirect_needs_checksum_to_be_native(self):
        gateway = PaytmGateway(GatewayCredentials(provider="paytm", merchant_id="MID", secret=self.KEY))

        assert gateway.parse_callback(self._form()) is None
        assert gateway.parse_callback({**self._form(), "CHECKSUMHASH": "x"}) is not None


# ══════════════════════════════════════════════════════════════
# STRIPE
# ══════════════════════════════════════════════════════════════

class TestStripe:

    SECRET = "whsec_stripe"

    def _gateway(self):
        return StripeGateway(GatewayCredentials(provider="stripe", secret="sk_test", webhook_secret=self.SECRET))

    def _payload(self):
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {
                "object": "checkout.session",
                "id": "cs_1",
                "payment_intent": "pi_1",
                "payment_status": "paid",
                "amount_total": 50000,
                "metadata": {"order_id": "ORD-1"},
            }},
        }).encode()

    def _signature(self, payload: bytes, secret: str) -> str:
        timestamp = int(time.time())
        signed = f"{timestamp}.".encode() + payload
        return f"t={timestamp},v1={hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()}"

    def test_signed_session_completed(self):
        gateway = self._gateway()
        payload = self._payload()

        assert gateway.verify_signature(payload, self._signature(payload, self.SECRET))
        event = gateway.parse_webhook(payload, {})
        assert event.event_id == "evt_1"
        assert event.order_ref.kind == OrderRefKind.ORDER_ID
        assert event.gateway_order_id == "cs_1"
        assert event.gateway_payment_id == "pi_1"
        assert event.mapped_status == PaymentStatus.PAID

    def test_foreign_secret_rejected(self):
        payload = self._payload()

        assert not self._gateway().verify_signature(payload, self._signature(payload, "whsec_other"))


# ══════════════════════════════════════════════════════════════
# REGISTRY
# ══════════════════════════════════════════════════════════════

class TestRegistry:

    def test_platform_default_and_hotel_override(self):
        registry = GatewayRegistry()
        platform = registry.register(GatewayCredentials(provider="razorpay", key_id="platform"))
        hotel = registry.register(GatewayCredentials(provider="razorpay", key_id="hotel"), hotel_id="HTL-9")

        assert registry.get("razorpay", "HTL-9") is hotel
        assert registry.get("RAZORPAY", "HTL-1") is platform
        assert registry.providers == ["razorpay"]

    def test_unknown_provider(self):
        registry = GatewayRegistry()

        with pytest.raises(UnsupportedProvider):
            registry.register(GatewayCredentials(provider="bitpay"))
        with pytest.raises(UnsupportedProvider):
            registry.get("phonepe")
