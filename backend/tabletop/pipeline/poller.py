"""
Status poller: on-demand reconciliation against the gateway.

The poller never mutates a paid order itself. A captured payment the store
does not know about becomes a synthesized ``status_poll`` event handed to
the orchestrator, so the same idempotency boundary guards every path.
"""

import uuid

import structlog

from tabletop.errors import OrderNotFound
from tabletop.pipeline.orchestrator import SettlementOrchestrator
from tabletop.pipeline.side_effects import FulfillmentSideEffects
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import (
    OrderRef,
    OrderRefKind,
    OrderStatus,
    PaymentEvent,
    PaymentEventKind,
    PaymentProvider,
    PaymentStatus,
    ReconciliationResult,
)
from tabletop.storage import IOrderRepository


class StatusPoller:

    def __init__(
        self,
        orders: IOrderRepository,
        orchestrator: SettlementOrchestrator,
        state_machine: OrderStateMachine,
        side_effects: FulfillmentSideEffects,
    ):
        self.orders = orders
        self.orchestrator = orchestrator
        self.state_machine = state_machine
        self.side_effects = side_effects
        self._logger = structlog.get_logger().bind(component="status_poller")

    async def reconcile(self, order_id: str) -> ReconciliationResult:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        previous = order.payment.payment_status
        log = self._logger.bind(order_id=order_id, provider=order.payment.provider.value)

        # Only unsettled gateway payments can drift from the gateway's view
        pollable = (
            previous in (PaymentStatus.PENDING, PaymentStatus.FAILED)
            and order.status != OrderStatus.CANCELLED
            and order.payment.provider != PaymentProvider.CASH
        )
        if not pollable:
            return ReconciliationResult(
                order_id=order_id,
                synced=order.payment.provider != PaymentProvider.CASH,
                status_changed=False,
                previous_status=previous,
                current_status=previous,
            )

        # Raises GatewayTimeout with the order untouched
        verdict = await self.orchestrator.query_gateway(order)
        log.info("gateway_status_polled", status=verdict.status.value, reason=verdict.reason)

        settlement = None
        if verdict.status == PaymentStatus.PAID or verdict.status == PaymentStatus.FAILED:
            settlement = await self.orchestrator.settle(PaymentEvent(
                event_id=f"poll_{uuid.uuid4().hex[:16]}",
                kind=PaymentEventKind.STATUS_POLL,
                provider=order.payment.provider.value,
                hotel_id=order.hotel_id,
                order_ref=OrderRef(kind=OrderRefKind.ORDER_ID, value=order_id),
                gateway_order_id=order.payment.gateway_order_id,
                gateway_payment_id=verdict.gateway_payment_id,
                signature_verified=True,
                raw_status="captured" if verdict.status == PaymentStatus.PAID else "failed",
            ))
        elif verdict.attempts == 0:
            transition = await self.state_machine.mark_abandoned(order)
            if transition.applied:
                await self.side_effects.on_failed(transition.order)
                log.info("checkout_abandoned")

        current = await self.orders.get(order_id) or order
        return ReconciliationResult(
            order_id=order_id,
            synced=True,
            status_changed=current.payment.payment_status != previous,
            previous_status=previous,
            current_status=current.payment.payment_status,
            settlement=settlement,
        )
