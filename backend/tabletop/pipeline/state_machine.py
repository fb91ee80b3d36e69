"""
Order payment state machine.

Every transition is a compare-and-set on the order version: read, decide,
write only if nobody else wrote in between. A lost race re-reads and decides
again against the winner's state, so the caller always learns the outcome
that actually holds in the store.

    pending ──► paid ──► refund_pending (claimed) ──► refunded
       │  ▲       └───────────────────────────────────▲
       ▼  │
      failed ──► cancelled (order cancelled)
"""

from typing import Any, Callable, NamedTuple, Optional

import structlog

from tabletop.config import settings
from tabletop.errors import (
    CancellationNotAllowed,
    ConcurrentModification,
    OrderNotFound,
    RefundNotAllowed,
    StaleEvent,
)
from tabletop.schemas import (
    Order,
    OrderStatus,
    PaymentStatus,
    RefundInfo,
)
from tabletop.schemas.domain import ORDER_STATUS_RANK, TERMINAL_PAYMENT_STATUSES, utcnow
from tabletop.storage import IOrderRepository


class Changes(NamedTuple):
    order: dict[str, Any]
    payment: dict[str, Any]


class TransitionResult(NamedTuple):
    order: Order
    applied: bool


Decision = Callable[[Order], Optional[Changes]]


class OrderStateMachine:

    def __init__(self, orders: IOrderRepository, max_attempts: int = settings.CAS_MAX_ATTEMPTS):
        self.orders = orders
        self.max_attempts = max_attempts
        self._logger = structlog.get_logger().bind(component="order_state_machine")

    async def _transition(self, order: Order, action: str, decide: Decision) -> TransitionResult:
        current: Optional[Order] = order
        for attempt in range(1, self.max_attempts + 1):
            if current is None:
                raise OrderNotFound(order.order_id)

            changes = decide(current)
            if changes is None:
                return TransitionResult(current, applied=False)

            updated = current.with_changes(changes.order, changes.payment)
            if await self.orders.compare_and_set(current, updated):
                self._logger.info(
                    "order_transitioned",
                    action=action,
                    order_id=order.order_id,
                    payment_status=updated.payment.payment_status.value,
                    order_status=updated.status.value,
                    version=updated.version,
                    attempt=attempt,
                )
                return TransitionResult(updated, applied=True)

            self._logger.info("order_cas_conflict", action=action, order_id=order.order_id, attempt=attempt)
            current = await self.orders.get(order.order_id)

        raise ConcurrentModification("order", order.order_id, self.max_attempts)

    # =========================================================================
    # SETTLEMENT TRANSITIONS
    # =========================================================================

    async def mark_paid(
        self,
        order: Order,
        gateway_payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        pending|failed -> paid, order pending|confirmed -> confirmed.

        Already paid is a no-op (``applied=False``). Raises StaleEvent for
        orders that were cancelled or refunded.
        """
        def decide(current: Order) -> Optional[Changes]:
            payment = current.payment
            if payment.payment_status == PaymentStatus.PAID:
                return None
            if (
                payment.payment_status in TERMINAL_PAYMENT_STATUSES
                or current.status == OrderStatus.CANCELLED
            ):
                raise StaleEvent(current.order_id, payment.payment_status.value, current.status.value)

            order_changes = {}
            # A paid order is at least confirmed
            if ORDER_STATUS_RANK[current.status] < ORDER_STATUS_RANK[OrderStatus.CONFIRMED]:
                order_changes["status"] = OrderStatus.CONFIRMED

            payment_changes = {
                "payment_status": PaymentStatus.PAID,
                "paid_at": utcnow(),
                "failure_reason": None,
            }
            # Gateway ids are set once
            if gateway_payment_id and not payment.gateway_payment_id:
                payment_changes["gateway_payment_id"] = gateway_payment_id
            if gateway_order_id and not payment.gateway_order_id:
                payment_changes["gateway_order_id"] = gateway_order_id
            return Changes(order_changes, payment_changes)

        return await self._transition(order, "mark_paid", decide)

    async def mark_failed(self, order: Order, reason: str = "Payment failed") -> TransitionResult:
        """pending -> failed; anything else is left alone."""
        def decide(current: Order) -> Optional[Changes]:
            if current.payment.payment_status != PaymentStatus.PENDING:
                return None
            return Changes({}, {"payment_status": PaymentStatus.FAILED, "failure_reason": reason})

        return await self._transition(order, "mark_failed", decide)

    async def mark_abandoned(
        self, order: Order, reason: str = "No payment attempts found"
    ) -> TransitionResult:
        """pending|failed -> failed with the order cancelled."""
        def decide(current: Order) -> Optional[Changes]:
            if current.payment.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                return None
            if current.status == OrderStatus.CANCELLED:
                return None
            return Changes(
                {"status": OrderStatus.CANCELLED, "cancellation_reason": reason},
                {"payment_status": PaymentStatus.FAILED, "failure_reason": reason},
            )

        return await self._transition(order, "mark_abandoned", decide)

    async def annotate(
        self,
        order: Order,
        set_once: Optional[dict[str, Any]] = None,
        fields: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Record fulfillment details on the order.

        ``set_once`` fields are written only while still empty; ``fields``
        always overwrite. Payment state is never touched.
        """
        set_once = set_once or {}
        fields = fields or {}

        def decide(current: Order) -> Optional[Changes]:
            changes = {k: v for k, v in set_once.items() if getattr(current, k) is None}
            changes.update({k: v for k, v in fields.items() if getattr(current, k) != v})
            return Changes(changes, {}) if changes else None

        return await self._transition(order, "annotate", decide)

    # =========================================================================
    # SIDE CHANNEL
    # =========================================================================

    async def cancel(self, order: Order, actor: str, reason: str) -> TransitionResult:
        """
        User/staff cancellation.

        Unpaid orders become ``cancelled``; paid orders become
        ``refund_pending``. Orders already ready or served cannot be cancelled.
        """
        def decide(current: Order) -> Optional[Changes]:
            if current.status == OrderStatus.CANCELLED:
                return None
            if ORDER_STATUS_RANK[current.status] >= ORDER_STATUS_RANK[OrderStatus.READY]:
                raise CancellationNotAllowed(current.order_id, f"order is {current.status.value}")

            order_changes = {
                "status": OrderStatus.CANCELLED,
                "cancellation_reason": reason,
                "cancelled_by": actor,
            }
            status = current.payment.payment_status
            if status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                return Changes(order_changes, {"payment_status": PaymentStatus.CANCELLED})
            if status == PaymentStatus.PAID:
                return Changes(order_changes, {"payment_status": PaymentStatus.REFUND_PENDING})
            raise CancellationNotAllowed(current.order_id, f"payment is {status.value}")

        return await self._transition(order, "cancel", decide)

    async def claim_refund(
        self,
        order: Order,
        claim_id: str,
        stale_after: float = settings.REFUND_CLAIM_TTL_SECONDS,
    ) -> TransitionResult:
        """
        paid|refund_pending -> refund_pending holding ``claim_id``.

        Only the caller whose claim is applied may ask the gateway for money
        back. A live claim held by someone else, or a completed refund, is
        ``applied=False``. Claims older than ``stale_after`` seconds can be
        taken over.
        """
        def decide(current: Order) -> Optional[Changes]:
            payment = current.payment
            status = payment.payment_status
            if status == PaymentStatus.REFUNDED:
                return None
            if status not in (PaymentStatus.PAID, PaymentStatus.REFUND_PENDING):
                raise RefundNotAllowed(current.order_id, f"payment is {status.value}")
            if payment.refund_claim_id and payment.refund_claimed_at:
                held_for = (utcnow() - payment.refund_claimed_at).total_seconds()
                if held_for < stale_after:
                    return None
                self._logger.warning("refund_claim_taken_over",
                                     order_id=current.order_id,
                                     previous_claim=payment.refund_claim_id,
                                     held_for=held_for)
            return Changes({}, {
                "payment_status": PaymentStatus.REFUND_PENDING,
                "refund_claim_id": claim_id,
                "refund_claimed_at": utcnow(),
            })

        return await self._transition(order, "claim_refund", decide)

    async def release_refund(self, order: Order, claim_id: str) -> TransitionResult:
        """Give a refund claim back after the gateway refused the refund."""
        def decide(current: Order) -> Optional[Changes]:
            if current.payment.refund_claim_id != claim_id:
                return None
            # A cancelled paid order still owes the refund
            status = PaymentStatus.REFUND_PENDING if current.status == OrderStatus.CANCELLED else PaymentStatus.PAID
            return Changes({}, {"payment_status": status, "refund_claim_id": None, "refund_claimed_at": None})

        return await self._transition(order, "release_refund", decide)

    async def mark_refunded(self, order: Order, refund: RefundInfo) -> TransitionResult:
        """paid|refund_pending -> refunded, dropping any refund claim."""
        def decide(current: Order) -> Optional[Changes]:
            status = current.payment.payment_status
            if status == PaymentStatus.REFUNDED:
                return None
            if status not in (PaymentStatus.PAID, PaymentStatus.REFUND_PENDING):
                raise RefundNotAllowed(current.order_id, f"payment is {status.value}")
            completed = refund.model_copy(update={"completed_at": refund.completed_at or utcnow()})
            return Changes({}, {
                "payment_status": PaymentStatus.REFUNDED,
                "refund": completed,
                "refund_claim_id": None,
                "refund_claimed_at": None,
            })

        return await self._transition(order, "mark_refunded", decide)
