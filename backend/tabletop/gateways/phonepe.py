"""
PhonePe adapter.

Requests and notifications travel as base64 JSON. ``X-VERIFY`` is
``sha256(base64_payload + endpoint + salt_key) + "###" + salt_index`` on
requests and ``sha256(base64_response + salt_key) + "###" + salt_index`` on
webhooks. Merchant transaction ids are our internal transaction ids.
"""

import base64
import hashlib
import json
from decimal import Decimal
from typing import Any, Mapping, Optional

from tabletop.config import gateway_settings
from tabletop.errors import GatewayError, MalformedEvent
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
from tabletop.schemas.domain import utcnow

PRODUCTION_URL = "https://api.phonepe.com/apis/hermes"
SANDBOX_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"

NOT_FOUND_CODES = {"TRANSACTION_NOT_FOUND", "PAYMENT_INITIATED"}


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class PhonePeGateway(GatewayClient):
    provider = "phonepe"
    signature_header = "x-verify"
    receipt_is_order_id = True

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.credentials.production else SANDBOX_URL

    def _x_verify(self, content: str) -> str:
        return f"{_sha256(content + self.credentials.secret)}###{self.credentials.salt_index}"

    async def _post_signed(self, endpoint: str, operation: str, payload: dict) -> dict:
        encoded = base64.b64encode(json.dumps(payload).encode()).decode()
        return await self._request(
            "POST",
            endpoint,
            operation,
            json={"request": encoded},
            headers={"X-VERIFY": self._x_verify(encoded + endpoint)},
        )

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: Optional[dict] = None,
    ) -> GatewayOrder:
        metadata = metadata or {}
        callback = f"{gateway_settings.BACKEND_URL}/api/v1/payments/callback/phonepe"
        data = await self._post_signed("/pg/v1/pay", "create_order", {
            "merchantId": self.credentials.merchant_id,
            "merchantTransactionId": receipt,
            "merchantUserId": metadata.get("user_id", f"USER_{receipt}"),
            "amount": to_minor_units(amount),
            "redirectUrl": metadata.get("redirect_url", callback),
            "redirectMode": "POST",
            "callbackUrl": metadata.get("callback_url", callback),
            "paymentInstrument": {"type": "PAY_PAGE"},
        })
        if not data.get("success"):
            raise GatewayError(self.provider, data.get("message", "Payment creation failed"), data.get("code"))

        redirect = data.get("data", {}).get("instrumentResponse", {}).get("redirectInfo", {})
        return GatewayOrder(
            gateway_order_id=receipt,
            amount=amount,
            currency=currency,
            receipt=receipt,
            redirect_url=redirect.get("url"),
            raw=data,
        )

    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        endpoint = f"/pg/v1/status/{self.credentials.merchant_id}/{gateway_order_id}"
        data = await self._request(
            "GET",
            endpoint,
            "fetch_status",
            headers={
                "X-VERIFY": self._x_verify(endpoint),
                "X-MERCHANT-ID": self.credentials.merchant_id,
            },
        )
        code = data.get("code", "")
        body = data.get("data") or {}
        if code in NOT_FOUND_CODES or not body.get("transactionId"):
            return []

        return [GatewayAttempt(
            attempt_id=body["transactionId"],
            status=code or body.get("state", "PENDING"),
            amount=from_minor_units(body.get("amount")),
            method=(body.get("paymentInstrument") or {}).get("type"),
            error_description=None if data.get("success") else data.get("message"),
        )]

    async def refund(
        self,
        gateway_payment_id: str,
        amount: Optional[Decimal] = None,
        gateway_order_id: Optional[str] = None,
    ) -> RefundReceipt:
        if amount is None:
            raise GatewayError(self.provider, "PhonePe refunds need an explicit amount")
        original = gateway_order_id or gateway_payment_id
        refund_id = f"REFUND_{original}_{int(utcnow().timestamp())}"
        data = await self._post_signed("/pg/v1/refund", "refund", {
            "merchantId": self.credentials.merchant_id,
            "merchantUserId": f"USER_{original}",
            "originalTransactionId": original,
            "merchantTransactionId": refund_id,
            "amount": to_minor_units(amount),
            "callbackUrl": f"{gateway_settings.BACKEND_URL}/api/v1/webhooks/phonepe",
        })
        if not data.get("success"):
            raise GatewayError(self.provider, data.get("message", "Refund failed"), data.get("code"))
        return RefundReceipt(
            refund_id=refund_id,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            status=(data.get("data") or {}).get("state", "PENDING").lower(),
        )

    # =========================================================================
    # SIGNATURES & PARSING
    # =========================================================================

    @staticmethod
    def _envelope(payload: bytes) -> str:
        try:
            body = json.loads(payload)
        except ValueError:
            raise MalformedEvent("PhonePe webhook body is not JSON")
        if not isinstance(body, dict) or "response" not in body:
            raise MalformedEvent(
                "PhonePe webhook without response envelope",
                available_keys=sorted(body.keys()) if isinstance(body, dict) else [],
            )
        if not isinstance(body["response"], str):
            raise MalformedEvent("PhonePe response envelope is not a string")
        return body["response"]

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature or "###" not in signature or not self.credentials.secret:
            return False
        received_hash, salt_index = signature.split("###", 1)
        if salt_index != str(self.credentials.salt_index):
            self._logger.warning("salt_index_mismatch", received=salt_index)
            return False
        expected = _sha256(self._envelope(payload) + self.credentials.secret)
        return constant_time_equals(expected, received_hash)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        try:
            decoded = json.loads(base64.b64decode(self._envelope(payload)))
        except ValueError:
            raise MalformedEvent("PhonePe response envelope is not base64 JSON")
        if not isinstance(decoded, dict):
            raise MalformedEvent("PhonePe response envelope is not a JSON object")

        body = decoded.get("data") or {}
        if not isinstance(body, dict):
            raise MalformedEvent("PhonePe notification data is not an object", available_keys=sorted(decoded.keys()))
        merchant_txn = body.get("merchantTransactionId")
        if not merchant_txn:
            raise MalformedEvent(
                "PhonePe notification without merchantTransactionId",
                available_keys=sorted(body.keys()),
            )

        return PaymentEvent(
            kind=PaymentEventKind.WEBHOOK,
            provider=self.provider,
            order_ref=OrderRef(kind=OrderRefKind.TRANSACTION_ID, value=merchant_txn),
            gateway_order_id=merchant_txn,
            gateway_payment_id=body.get("transactionId"),
            signature_verified=True,
            raw_status=decoded.get("code") or body.get("state"),
            amount=from_minor_units(body.get("amount")),
        )
