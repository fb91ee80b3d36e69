"""
HTTP surface: status codes the gateways and clients see.
"""

import json

import httpx
import pytest

from tabletop.api.server import create_app
from tabletop.schemas import OrderStatus


@pytest.fixture
async def client(container):
    app = create_app(container)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


def _webhook(status="captured", order_id="order_A") -> bytes:
    return json.dumps({"order_id": order_id, "status": status, "payment_id": "pay_1"}).encode()


class TestWebhookEndpoint:

    async def test_bad_signature_is_400(self, client, make_user, make_order):
        await make_user()
        await make_order()

        response = await client.post(
            "/api/v1/webhooks/razorpay", content=_webhook(), headers={"x-fake-signature": "forged"}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "SignatureInvalid"

    async def test_duplicate_delivery_answers_200_both_times(self, client, make_user, make_order):
        await make_user()
        await make_order()
        headers = {"x-fake-signature": "valid"}

        first = await client.post("/api/v1/webhooks/razorpay/HTL-1", content=_webhook(), headers=headers)
        second = await client.post("/api/v1/webhooks/razorpay/HTL-1", content=_webhook(), headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "settled"
        assert first.json()["payment_status"] == "paid"
        assert second.status_code == 200
        assert second.json()["status"] == "already_settled"
        assert "X-Response-Time-Ms" in second.headers

    async def test_unknown_order_is_acknowledged(self, client):
        response = await client.post(
            "/api/v1/webhooks/razorpay", content=_webhook(order_id="order_missing"),
            headers={"x-fake-signature": "valid"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "status": "order_not_found",
            "reason": "Order not found for reference: gateway_order_id:order_missing",
        }

    async def test_unsupported_provider(self, client):
        response = await client.post("/api/v1/webhooks/bitpay", content=b"{}")

        assert response.status_code == 400

    async def test_gateway_timeout_asks_for_retry(self, client, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "captured")
        gateway.delay = 1
        container.orchestrator.timeout = 0.05

        response = await client.get(f"/api/v1/payments/callback/razorpay?transactionId={order.payment.transaction_id}")

        assert response.status_code == 503
        assert response.headers["retry-after"] == "30"


class TestCallbackEndpoint:

    async def test_get_redirect_settles_after_gateway_check(self, client, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "captured")

        response = await client.get(
            "/api/v1/payments/callback/razorpay", params={"transactionId": order.payment.transaction_id}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "settled"
        assert gateway.status_calls == ["order_A"]

    async def test_form_post_redirect(self, client, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "created")

        response = await client.post(
            "/api/v1/payments/callback/razorpay/HTL-1",
            data={"orderId": order.order_id, "code": "PAYMENT_PENDING"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    async def test_unrecognized_redirect_is_400(self, client):
        response = await client.get("/api/v1/payments/callback/razorpay", params={"foo": "bar"})

        assert response.status_code == 400
        assert response.json()["error"] == "MalformedEvent"


class TestOrderEndpoints:

    async def test_status_poll(self, client, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "captured")

        response = await client.get(f"/api/v1/payments/{order.order_id}/status")

        body = response.json()
        assert response.status_code == 200
        assert body["current_status"] == "paid"
        assert body["status_changed"] is True
        assert body["settlement"]["status"] == "settled"

    async def test_status_of_unknown_order_is_404(self, client):
        response = await client.get("/api/v1/payments/ORD-NOPE/status")

        assert response.status_code == 404

    async def test_cancel(self, client, make_user, make_order):
        await make_user()
        order = await make_order()

        response = await client.post(f"/api/v1/orders/{order.order_id}/cancel", json={"actor": "USR-1"})

        assert response.status_code == 200
        assert response.json()["payment_status"] == "cancelled"

    async def test_cancel_served_order_conflicts(self, client, make_user, make_order):
        await make_user()
        order = await make_order(status=OrderStatus.COMPLETED)

        response = await client.post(f"/api/v1/orders/{order.order_id}/cancel", json={"actor": "USR-1"})

        assert response.status_code == 409

    async def test_refund_unpaid_conflicts(self, client, make_user, make_order):
        await make_user()
        order = await make_order()

        response = await client.post(f"/api/v1/orders/{order.order_id}/refund", json={})

        assert response.status_code == 409
        assert response.json()["error"] == "RefundNotAllowed"


class TestCoinEndpoints:

    async def test_summary_and_history(self, client, make_user):
        await make_user(coins=40)

        summary = await client.get("/api/v1/users/USR-1/coins")
        history = await client.get("/api/v1/users/USR-1/coins/history", params={"type": "adjusted"})

        assert summary.json()["balance"] == 40
        entries = history.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["amount"] == 40

    async def test_admin_adjustment(self, client, make_user):
        await make_user(coins=40)

        response = await client.post(
            "/api/v1/admin/users/USR-1/coins/adjust",
            json={"amount": -15, "reason": "duplicate bonus", "admin_id": "ADM-2"},
        )

        assert response.status_code == 200
        assert response.json()["entry"]["balance_after"] == 25

    async def test_overdrawing_adjustment_conflicts(self, client, make_user):
        await make_user(coins=5)

        response = await client.post(
            "/api/v1/admin/users/USR-1/coins/adjust",
            json={"amount": -15, "reason": "penalty", "admin_id": "ADM-2"},
        )

        assert response.status_code == 409

    async def test_unknown_user_is_404(self, client):
        response = await client.get("/api/v1/users/USR-404/coins")

        assert response.status_code == 404

    async def test_zero_adjustment_is_400(self, client, make_user):
        await make_user()

        response = await client.post(
            "/api/v1/admin/users/USR-1/coins/adjust",
            json={"amount": 0, "reason": "nothing", "admin_id": "ADM-2"},
        )

        assert response.status_code == 400


class TestHealth:

    async def test_health(self, client):
        response = await client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["storage_backend"] == "memory"
        assert body["providers"] == ["razorpay"]
        assert body["invoice_queue"]["total"] == 0
