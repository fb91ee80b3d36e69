"""
Status poller reconciliation.
"""

import pytest

from tabletop.errors import GatewayTimeout, OrderNotFound
from tabletop.schemas import CartStatus, OrderStatus, PaymentProvider, PaymentStatus, SettlementStatus


class TestReconcile:

    async def test_captured_at_gateway_settles(self, container, gateway, make_user, make_order):
        await make_user(coins=20)
        order = await make_order(coins_used=10, reward_coins=2)
        gateway.set_attempts("order_A", "captured")

        result = await container.poller.reconcile(order.order_id)

        assert result.synced
        assert result.status_changed
        assert result.previous_status == PaymentStatus.PENDING
        assert result.current_status == PaymentStatus.PAID
        assert result.settlement.status == SettlementStatus.SETTLED
        assert (await container.repositories.users.get("USR-1")).coins == 12

    async def test_repeated_polls_settle_once(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order(reward_coins=2)
        gateway.set_attempts("order_A", "captured")

        await container.poller.reconcile(order.order_id)
        second = await container.poller.reconcile(order.order_id)

        assert not second.status_changed
        assert second.settlement is None
        assert gateway.status_calls == ["order_A"]
        assert len(await container.repositories.ledger.list_for_order(order.order_id)) == 1

    async def test_still_pending(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "created")

        result = await container.poller.reconcile(order.order_id)

        assert not result.status_changed
        assert result.current_status == PaymentStatus.PENDING
        assert (await container.repositories.orders.get(order.order_id)).status == OrderStatus.PENDING

    async def test_failed_at_gateway(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "failed")

        result = await container.poller.reconcile(order.order_id)

        assert result.current_status == PaymentStatus.FAILED
        assert result.settlement.status == SettlementStatus.FAILED

    async def test_failed_order_recovers_when_gateway_captured(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        await container.state_machine.mark_failed(order, "timeout at checkout")
        gateway.set_attempts("order_A", "captured", "failed")

        result = await container.poller.reconcile(order.order_id)

        assert result.previous_status == PaymentStatus.FAILED
        assert result.current_status == PaymentStatus.PAID

    async def test_no_attempts_abandons_checkout(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A")

        result = await container.poller.reconcile(order.order_id)

        stored = await container.repositories.orders.get(order.order_id)
        assert result.current_status == PaymentStatus.FAILED
        assert stored.status == OrderStatus.CANCELLED
        cart = await container.repositories.carts.find_active("USR-1", "HTL-1", "BR-1")
        assert cart.status == CartStatus.ACTIVE
        assert cart.checkout_order_id is None

    async def test_cash_orders_are_not_polled(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order(provider=PaymentProvider.CASH, gateway_order_id=None)

        result = await container.poller.reconcile(order.order_id)

        assert not result.synced
        assert gateway.status_calls == []

    async def test_cancelled_orders_are_not_polled(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        await container.orchestrator.cancel(order.order_id, actor="USR-1", reason="left")
        gateway.set_attempts("order_A", "captured")

        result = await container.poller.reconcile(order.order_id)

        assert not result.status_changed
        assert result.current_status == PaymentStatus.CANCELLED
        assert gateway.status_calls == []

    async def test_timeout_leaves_order_untouched(self, container, gateway, make_user, make_order):
        await make_user()
        order = await make_order()
        gateway.set_attempts("order_A", "captured")
        gateway.delay = 1
        container.orchestrator.timeout = 0.05

        with pytest.raises(GatewayTimeout):
            await container.poller.reconcile(order.order_id)

        assert (await container.repositories.orders.get(order.order_id)).version == order.version

    async def test_unknown_order(self, container):
        with pytest.raises(OrderNotFound):
            await container.poller.reconcile("ORD-MISSING")
