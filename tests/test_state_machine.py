"""
Order state machine: compare-and-set transitions and their guards.
"""

from decimal import Decimal

import pytest

from tabletop.errors import (
    CancellationNotAllowed,
    ConcurrentModification,
    RefundNotAllowed,
    StaleEvent,
)
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import Order, OrderStatus, PaymentStatus, RefundInfo
from tabletop.schemas.domain import ORDER_STATUS_RANK
from tabletop.storage import InMemoryOrderRepository


# ── Shared stubs ───────────────────────────────────────────────

class AlwaysConflictingRepository(InMemoryOrderRepository):
    """Every conditional write loses."""

    def __init__(self):
        super().__init__()
        self.cas_calls = 0

    async def compare_and_set(self, current, updated):
        self.cas_calls += 1
        return False


def _order(**fields) -> Order:
    return Order(user_id="USR-1", hotel_id="HTL-1", total_price=Decimal("300"), **fields)


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def machine(orders):
    return OrderStateMachine(orders)


# ══════════════════════════════════════════════════════════════
# MARK PAID
# ══════════════════════════════════════════════════════════════

class TestMarkPaid:

    async def test_pending_becomes_paid_and_confirmed(self, orders, machine):
        order = await orders.save(_order())

        result = await machine.mark_paid(order, gateway_payment_id="pay_1", gateway_order_id="order_1")

        assert result.applied
        assert result.order.payment.payment_status == PaymentStatus.PAID
        assert result.order.status == OrderStatus.CONFIRMED
        assert result.order.payment.paid_at is not None
        assert result.order.payment.gateway_payment_id == "pay_1"
        assert result.order.version == order.version + 1
        assert (await orders.get(order.order_id)).version == order.version + 1

    async def test_second_mark_paid_is_noop(self, orders, machine):
        order = await orders.save(_order())
        await machine.mark_paid(order, gateway_payment_id="pay_1")

        again = await machine.mark_paid(order, gateway_payment_id="pay_2")

        assert not again.applied
        assert again.order.payment.gateway_payment_id == "pay_1"

    async def test_stale_snapshot_rereads_before_deciding(self, orders, machine):
        order = await orders.save(_order())
        await machine.cancel(order, actor="USR-1", reason="left")

        # ``order`` is the pre-cancellation snapshot
        with pytest.raises(StaleEvent):
            await machine.mark_paid(order)

        stored = await orders.get(order.order_id)
        assert stored.payment.payment_status == PaymentStatus.CANCELLED

    async def test_preparing_order_keeps_its_status(self, orders, machine):
        order = await orders.save(_order(status=OrderStatus.PREPARING))

        result = await machine.mark_paid(order)

        assert result.order.status == OrderStatus.PREPARING

    @pytest.mark.parametrize("status", [
        OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED,
    ])
    async def test_paid_order_is_at_least_confirmed(self, orders, machine, status):
        order = await orders.save(_order(status=status))

        result = await machine.mark_paid(order)

        assert ORDER_STATUS_RANK[result.order.status] >= ORDER_STATUS_RANK[OrderStatus.CONFIRMED]
        assert ORDER_STATUS_RANK[result.order.status] >= ORDER_STATUS_RANK[status]

    async def test_failed_payment_can_still_be_paid(self, orders, machine):
        order = await orders.save(_order())
        failed = await machine.mark_failed(order, "card declined")

        result = await machine.mark_paid(failed.order)

        assert result.applied
        assert result.order.payment.failure_reason is None

    async def test_gives_up_after_repeated_conflicts(self):
        orders = AlwaysConflictingRepository()
        order = await orders.save(_order())

        with pytest.raises(ConcurrentModification) as exc_info:
            await OrderStateMachine(orders, max_attempts=3).mark_paid(order)

        assert orders.cas_calls == 3
        assert exc_info.value.retryable


# ══════════════════════════════════════════════════════════════
# FAILURE AND ABANDONMENT
# ══════════════════════════════════════════════════════════════

class TestMarkFailed:

    async def test_only_pending_fails(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)

        result = await machine.mark_failed(paid.order, "late failure notice")

        assert not result.applied
        assert result.order.payment.payment_status == PaymentStatus.PAID

    async def test_abandoned_checkout_cancels_order(self, orders, machine):
        order = await orders.save(_order())

        result = await machine.mark_abandoned(order)

        assert result.applied
        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.payment.payment_status == PaymentStatus.FAILED
        assert not (await machine.mark_abandoned(result.order)).applied


# ══════════════════════════════════════════════════════════════
# CANCELLATION AND REFUND
# ══════════════════════════════════════════════════════════════

class TestCancel:

    async def test_paid_order_goes_refund_pending(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)

        result = await machine.cancel(paid.order, actor="STF-1", reason="out of stock")

        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.payment.payment_status == PaymentStatus.REFUND_PENDING
        assert result.order.cancellation_reason == "out of stock"

    @pytest.mark.parametrize("status", [OrderStatus.READY, OrderStatus.COMPLETED])
    async def test_served_orders_cannot_be_cancelled(self, orders, machine, status):
        order = await orders.save(_order(status=status))

        with pytest.raises(CancellationNotAllowed):
            await machine.cancel(order, actor="USR-1", reason="too late")

    async def test_refunded_order_cannot_be_cancelled(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)
        refunded = await machine.mark_refunded(paid.order, RefundInfo(refund_id="rf_1", amount=Decimal("300")))

        with pytest.raises(CancellationNotAllowed):
            await machine.cancel(refunded.order, actor="USR-1", reason="again")


class TestMarkRefunded:

    async def test_refund_requires_payment(self, orders, machine):
        order = await orders.save(_order())

        with pytest.raises(RefundNotAllowed):
            await machine.mark_refunded(order, RefundInfo(refund_id="rf_1", amount=Decimal("10")))

    async def test_refund_completes_info(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)

        result = await machine.mark_refunded(paid.order, RefundInfo(refund_id="rf_1", amount=Decimal("10")))

        assert result.order.payment.payment_status == PaymentStatus.REFUNDED
        assert result.order.payment.refund.completed_at is not None
        assert not (await machine.mark_refunded(result.order, result.order.payment.refund)).applied


class TestRefundClaim:

    async def test_second_claim_is_refused_while_first_is_live(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)

        first = await machine.claim_refund(paid.order, "rfc_1")
        second = await machine.claim_refund(paid.order, "rfc_2")

        assert first.applied
        assert first.order.payment.payment_status == PaymentStatus.REFUND_PENDING
        assert not second.applied
        assert second.order.payment.refund_claim_id == "rfc_1"

    async def test_stale_claim_can_be_taken_over(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)
        await machine.claim_refund(paid.order, "rfc_1")

        result = await machine.claim_refund(paid.order, "rfc_2", stale_after=0)

        assert result.applied
        assert result.order.payment.refund_claim_id == "rfc_2"

    async def test_unpaid_order_cannot_be_claimed(self, orders, machine):
        order = await orders.save(_order())

        with pytest.raises(RefundNotAllowed):
            await machine.claim_refund(order, "rfc_1")

    async def test_release_restores_paid(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)
        claimed = await machine.claim_refund(paid.order, "rfc_1")

        assert not (await machine.release_refund(claimed.order, "rfc_other")).applied
        result = await machine.release_refund(claimed.order, "rfc_1")

        assert result.order.payment.payment_status == PaymentStatus.PAID
        assert result.order.payment.refund_claim_id is None

    async def test_release_keeps_cancelled_order_owing_refund(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)
        cancelled = await machine.cancel(paid.order, actor="STF-1", reason="kitchen closed")
        claimed = await machine.claim_refund(cancelled.order, "rfc_1")

        result = await machine.release_refund(claimed.order, "rfc_1")

        assert result.order.payment.payment_status == PaymentStatus.REFUND_PENDING
        assert result.order.payment.refund_claim_id is None

    async def test_refund_drops_claim(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)
        claimed = await machine.claim_refund(paid.order, "rfc_1")

        result = await machine.mark_refunded(claimed.order, RefundInfo(refund_id="rf_1", amount=Decimal("300")))

        assert result.order.payment.payment_status == PaymentStatus.REFUNDED
        assert result.order.payment.refund_claim_id is None
        assert result.order.payment.refund_claimed_at is None


# ══════════════════════════════════════════════════════════════
# ANNOTATE
# ══════════════════════════════════════════════════════════════

class TestAnnotate:

    async def test_set_once_fields_are_not_overwritten(self, orders, machine):
        order = await orders.save(_order())
        await machine.annotate(order, set_once={"staff_id": "STF-1"})

        result = await machine.annotate(order, set_once={"staff_id": "STF-2"})

        assert not result.applied
        assert result.order.staff_id == "STF-1"

    async def test_annotate_leaves_payment_alone(self, orders, machine):
        order = await orders.save(_order())
        paid = await machine.mark_paid(order)

        result = await machine.annotate(order, fields={"invoice_number": "INV-1"})

        assert result.applied
        assert result.order.invoice_number == "INV-1"
        assert result.order.payment.payment_status == PaymentStatus.PAID
        assert result.order.version == paid.order.version + 1
