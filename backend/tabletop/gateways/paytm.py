"""
Paytm adapter.

Checksum: sha256 of the sorted ``key=value`` pairs joined with ``&``, with the
merchant key appended. Notifications and redirects are form posts carrying
the checksum in ``CHECKSUMHASH``.
"""

import hashlib
import json
from decimal import Decimal
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from tabletop.config import gateway_settings
from tabletop.errors import GatewayError, MalformedEvent
from tabletop.gateways.base import GatewayClient, constant_time_equals
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

PRODUCTION_URL = "https://securegw.paytm.in"
STAGING_URL = "https://securegw-stage.paytm.in"


def generate_checksum(params: Mapping[str, Any], merchant_key: str) -> str:
    param_string = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha256((param_string + merchant_key).encode()).hexdigest()


def _decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return Decimal(str(value))


class PaytmGateway(GatewayClient):
    provider = "paytm"
    receipt_is_order_id = True

    @property
    def base_url(self) -> str:
        return PRODUCTION_URL if self.credentials.production else STAGING_URL

    @property
    def website(self) -> str:
        return self.credentials.extra.get("website", "DEFAULT")

    async def _post_signed(self, path: str, operation: str, signed: dict, body: dict) -> dict:
        data = await self._request(
            "POST",
            path,
            operation,
            json={
                "body": body,
                "head": {"signature": generate_checksum(signed, self.credentials.secret)},
            },
        )
        return data.get("body", {})

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        metadata: Optional[dict] = None,
    ) -> GatewayOrder:
        metadata = metadata or {}
        mid = self.credentials.merchant_id
        customer = metadata.get("user_id", f"CUST_{receipt}")
        callback = metadata.get(
            "callback_url", f"{gateway_settings.BACKEND_URL}/api/v1/payments/callback/paytm"
        )
        body = await self._post_signed(
            f"/theia/api/v1/initiateTransaction?mid={mid}&orderId={receipt}",
            "create_order",
            {
                "MID": mid,
                "WEBSITE": self.website,
                "ORDER_ID": receipt,
                "CUST_ID": customer,
                "TXN_AMOUNT": str(amount),
                "CALLBACK_URL": callback,
            },
            {
                "requestType": "Payment",
                "mid": mid,
                "websiteName": self.website,
                "orderId": receipt,
                "txnAmount": {"value": str(amount), "currency": currency},
                "userInfo": {"custId": customer},
                "callbackUrl": callback,
            },
        )
        result = body.get("resultInfo", {})
        if result.get("resultStatus") != "S":
            raise GatewayError(self.provider, result.get("resultMsg", "Payment creation failed"), result.get("resultCode"))

        return GatewayOrder(
            gateway_order_id=receipt,
            amount=amount,
            currency=currency,
            receipt=receipt,
            redirect_url=f"{self.base_url}/theia/api/v1/showPaymentPage?mid={mid}&orderId={receipt}",
            raw=body,
        )

    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        mid = self.credentials.merchant_id
        body = await self._post_signed(
            "/order/status",
            "fetch_status",
            {"MID": mid, "ORDERID": gateway_order_id},
            {"mid": mid, "orderId": gateway_order_id},
        )
        if not body.get("txnId"):
            return []
        result = body.get("resultInfo", {})
        return [GatewayAttempt(
            attempt_id=body["txnId"],
            status=result.get("resultStatus", "PENDING"),
            amount=_decimal(body.get("txnAmount")),
            method=body.get("paymentMode"),
            error_description=result.get("resultMsg"),
        )]

    async def refund(
        self,
        gateway_payment_id: str,
        amount: Optional[Decimal] = None,
        gateway_order_id: Optional[str] = None,
    ) -> RefundReceipt:
        if amount is None or gateway_order_id is None:
            raise GatewayError(self.provider, "Paytm refunds need the order id and an amount")
        mid = self.credentials.merchant_id
        refund_id = f"REFUND_{gateway_order_id}_{int(utcnow().timestamp())}"
        body = await self._post_signed(
            "/refund/apply",
            "refund",
            {
                "MID": mid,
                "ORDERID": gateway_order_id,
                "REFUNDID": refund_id,
                "TXNID": gateway_payment_id,
                "REFUNDAMOUNT": str(amount),
            },
            {
                "mid": mid,
                "orderId": gateway_order_id,
                "refId": refund_id,
                "txnId": gateway_payment_id,
                "refundAmount": str(amount),
            },
        )
        result = body.get("resultInfo", {})
        if result.get("resultStatus") not in ("PENDING", "TXN_SUCCESS"):
            raise GatewayError(self.provider, result.get("resultMsg", "Refund failed"), result.get("resultCode"))
        return RefundReceipt(
            refund_id=refund_id,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            status=result["resultStatus"].lower(),
        )

    # =========================================================================
    # SIGNATURES & PARSING
    # =========================================================================

    @staticmethod
    def _fields(payload: bytes) -> dict[str, str]:
        text = payload.decode("utf-8", errors="replace").strip()
        if text.startswith("{"):
            try:
                return {k: str(v) for k, v in json.loads(text).items()}
            except ValueError:
                raise MalformedEvent("Paytm notification is not valid JSON")
        return dict(parse_qsl(text, keep_blank_values=True))

    def verify_fields(self, fields: Mapping[str, Any]) -> bool:
        if not self.credentials.secret:
            return False
        params = {k: v for k, v in fields.items() if k != "CHECKSUMHASH"}
        expected = generate_checksum(params, self.credentials.secret)
        return constant_time_equals(expected, fields.get("CHECKSUMHASH"))

    def extract_signature(self, headers: Mapping[str, str], payload: bytes) -> Optional[str]:
        return self._fields(payload).get("CHECKSUMHASH")

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        fields = self._fields(payload)
        if signature:
            fields["CHECKSUMHASH"] = signature
        return self.verify_fields(fields)

    def verify_payment_signature(self, params: Mapping[str, Any]) -> bool:
        return self.verify_fields(params)

    def _event(self, fields: Mapping[str, Any], kind: PaymentEventKind) -> PaymentEvent:
        order_id = fields.get("ORDERID")
        if not order_id:
            raise MalformedEvent("Paytm notification without ORDERID", available_keys=sorted(fields.keys()))
        return PaymentEvent(
            kind=kind,
            provider=self.provider,
            order_ref=OrderRef(kind=OrderRefKind.TRANSACTION_ID, value=order_id),
            gateway_order_id=order_id,
            gateway_payment_id=fields.get("TXNID") or None,
            signature_verified=kind == PaymentEventKind.WEBHOOK,
            raw_status=fields.get("STATUS"),
            amount=_decimal(fields.get("TXNAMOUNT")),
        )

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        return self._event(self._fields(payload), PaymentEventKind.WEBHOOK)

    def parse_callback(self, params: Mapping[str, Any]) -> Optional[PaymentEvent]:
        if not (params.get("ORDERID") and params.get("CHECKSUMHASH")):
            return None
        return self._event(params, PaymentEventKind.REDIRECT_CALLBACK)
