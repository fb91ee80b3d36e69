"""
Settlement Orchestrator
=======================
Top-level use case: a normalized ``PaymentEvent`` in, a ``SettlementResult``
out.

    resolve order ─► already paid? ─► authoritative status ─► mark_paid
                        │ yes              │ failed/pending         │
                        ▼                  ▼                        ▼
                 ALREADY_SETTLED     FAILED / PENDING      ledger ─► side effects

The "already paid" short-circuit and the compare-and-set inside
``OrderStateMachine.mark_paid`` are the idempotency boundary: however many
times and through whichever channel a payment is reported, exactly one
caller gets ``applied=True`` and only that caller touches the ledger and
the fan-out.

Once the payment transition is committed nothing downstream can undo it or
turn the result into an error.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import NamedTuple, Optional

import structlog

from tabletop.config import settings
from tabletop.errors import (
    GatewayError,
    GatewayTimeout,
    InsufficientBalance,
    OrderNotFound,
    RefundNotAllowed,
    StaleEvent,
)
from tabletop.gateways import GatewayRegistry
from tabletop.pipeline.ledger import CoinLedger
from tabletop.pipeline.side_effects import FulfillmentSideEffects
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import (
    LedgerReport,
    Order,
    OrderRef,
    OrderRefKind,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
    RefundInfo,
    SettlementResult,
    SettlementStatus,
)
from tabletop.schemas.domain import TERMINAL_PAYMENT_STATUSES
from tabletop.schemas.events import LedgerFailure
from tabletop.storage import IOrderRepository


class GatewayVerdict(NamedTuple):
    status: PaymentStatus
    gateway_payment_id: Optional[str] = None
    reason: Optional[str] = None
    # None when the gateway was not asked
    attempts: Optional[int] = None


class SettlementOrchestrator:

    def __init__(
        self,
        orders: IOrderRepository,
        state_machine: OrderStateMachine,
        ledger: CoinLedger,
        side_effects: FulfillmentSideEffects,
        registry: GatewayRegistry,
        timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
    ):
        self.orders = orders
        self.state_machine = state_machine
        self.ledger = ledger
        self.side_effects = side_effects
        self.registry = registry
        self.timeout = timeout
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="settlement", correlation_id=correlation_id)

    # =========================================================================
    # ORDER RESOLUTION
    # =========================================================================

    async def resolve_order(self, ref: OrderRef) -> Order:
        """Look the reference up by its own kind first, then by the others."""
        lookups = {
            OrderRefKind.TRANSACTION_ID: self.orders.get_by_transaction_id,
            OrderRefKind.ORDER_ID: self.orders.get,
            OrderRefKind.GATEWAY_ORDER_ID: self.orders.get_by_gateway_order_id,
        }
        order = await lookups[ref.kind](ref.value)
        if order is not None:
            return order
        for kind, lookup in lookups.items():
            if kind == ref.kind:
                continue
            order = await lookup(ref.value)
            if order is not None:
                return order
        raise OrderNotFound(str(ref))

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def settle(self, event: PaymentEvent) -> SettlementResult:
        correlation_id = event.event_id or f"stl_{uuid.uuid4().hex[:16]}"
        log = self._get_logger(correlation_id).bind(
            provider=event.provider,
            event_kind=event.kind.value,
            order_ref=str(event.order_ref),
        )

        order = await self.resolve_order(event.order_ref)
        log = log.bind(order_id=order.order_id)

        claimed = event.mapped_status if event.signature_verified else None
        if claimed == PaymentStatus.REFUNDED:
            return await self._settle_refund_notice(order, event, correlation_id)

        if order.is_paid:
            log.info("settlement_short_circuit", reason="already_paid")
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=order)

        if self._is_terminal(order):
            log.warning("stale_event_rejected",
                        payment_status=order.payment.payment_status.value,
                        order_status=order.status.value)
            return SettlementResult(status=SettlementStatus.REJECTED, order=order,
                                    reason=f"order is {order.status.value}/{order.payment.payment_status.value}")

        if claimed in (PaymentStatus.PAID, PaymentStatus.FAILED):
            verdict = GatewayVerdict(claimed, event.gateway_payment_id)
        else:
            verdict = await self.query_gateway(order, event.gateway_order_id)
        log.info("gateway_status_resolved", status=verdict.status.value, trusted_event=claimed is not None)

        if verdict.status == PaymentStatus.FAILED:
            return await self._settle_failure(order, verdict.reason or "Payment failed", correlation_id)
        if verdict.status != PaymentStatus.PAID:
            return SettlementResult(status=SettlementStatus.PENDING, order=order, reason="payment not captured yet")

        try:
            transition = await self.state_machine.mark_paid(
                order,
                gateway_payment_id=verdict.gateway_payment_id,
                gateway_order_id=event.gateway_order_id,
            )
        except StaleEvent as e:
            log.warning("stale_event_rejected", payment_status=e.payment_status, order_status=e.order_status)
            return SettlementResult(status=SettlementStatus.REJECTED, order=order, reason=str(e))

        if not transition.applied:
            log.info("settlement_short_circuit", reason="lost_race")
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=transition.order)

        order = transition.order
        log.info("payment_settled", amount=str(order.total_price), transaction_id=order.payment.transaction_id)

        report = await self._apply_coins(order, log)
        outcomes = await self.side_effects.on_settled(order, correlation_id)
        failed = [o.name for o in outcomes if not o.success]
        if failed:
            log.warning("side_effects_partially_failed", failed=failed)

        # Side effects annotate the order; return the latest snapshot
        order = await self.orders.get(order.order_id) or order
        return SettlementResult(status=SettlementStatus.SETTLED, order=order, ledger=report, side_effects=outcomes)

    @staticmethod
    def _is_terminal(order: Order) -> bool:
        return order.payment.payment_status in TERMINAL_PAYMENT_STATUSES or order.status == OrderStatus.CANCELLED

    async def query_gateway(self, order: Order, gateway_order_id: Optional[str] = None) -> GatewayVerdict:
        """
        Ask the gateway what actually happened.

        A timeout raises ``GatewayTimeout`` and leaves the order untouched.
        """
        client = self.registry.get(order.payment.provider.value, order.hotel_id)
        key = gateway_order_id or client.status_key(order.payment)
        if not key:
            return GatewayVerdict(PaymentStatus.PENDING, reason="no gateway order yet")

        try:
            attempts = await asyncio.wait_for(client.fetch_status(key), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._base_logger.warning("gateway_status_timeout", order_id=order.order_id, provider=client.provider)
            raise GatewayTimeout(client.provider, "fetch_status")

        paid = next((a for a in attempts if a.mapped_status == PaymentStatus.PAID), None)
        if paid is not None:
            return GatewayVerdict(PaymentStatus.PAID, paid.attempt_id, attempts=len(attempts))
        if attempts and attempts[0].mapped_status == PaymentStatus.FAILED:
            return GatewayVerdict(PaymentStatus.FAILED, reason=attempts[0].error_description or attempts[0].status,
                                  attempts=len(attempts))
        if not attempts:
            return GatewayVerdict(PaymentStatus.PENDING, reason="no payment attempts", attempts=0)
        return GatewayVerdict(PaymentStatus.PENDING, reason=attempts[0].status, attempts=len(attempts))

    async def _apply_coins(self, order: Order, log) -> LedgerReport:
        effects = self.ledger.effects_for_order(order)
        if not effects:
            return LedgerReport()
        try:
            report = await self.ledger.apply(order, effects)
        except InsufficientBalance as e:
            # The payment stands; the coin discrepancy needs a human
            log.critical("ledger_integrity_alert",
                         reason="insufficient_balance_after_payment",
                         user_id=e.user_id,
                         balance=e.balance,
                         amount=e.amount)
            return e.report or LedgerReport()
        except Exception as e:
            log.error("ledger_apply_failed", error=str(e), error_type=type(e).__name__)
            return LedgerReport(failed=[
                LedgerFailure(type=effect.type, amount=effect.amount, error=str(e)) for effect in effects
            ])

        if not report.ok:
            log.warning("ledger_partially_failed", failed=[f.type.value for f in report.failed])
        return report

    async def _settle_failure(self, order: Order, reason: str, correlation_id: str) -> SettlementResult:
        transition = await self.state_machine.mark_failed(order, reason)
        outcomes = []
        if transition.applied:
            outcomes = await self.side_effects.on_failed(transition.order, correlation_id)
            self._get_logger(correlation_id).info("payment_failed", order_id=order.order_id, reason=reason)
        return SettlementResult(
            status=SettlementStatus.FAILED,
            order=transition.order,
            side_effects=outcomes,
            reason=reason,
        )

    async def _settle_refund_notice(self, order: Order, event: PaymentEvent, correlation_id: str) -> SettlementResult:
        """Gateway reports a refund we may or may not have initiated."""
        log = self._get_logger(correlation_id).bind(order_id=order.order_id)
        refund = order.payment.refund or RefundInfo(
            refund_id=event.event_id or f"rfnd_{uuid.uuid4().hex[:12]}",
            amount=event.amount if event.amount is not None else order.total_price,
            reason="Refunded at gateway",
        )
        try:
            transition = await self.state_machine.mark_refunded(order, refund)
        except RefundNotAllowed as e:
            log.warning("refund_notice_rejected", reason=e.reason)
            return SettlementResult(status=SettlementStatus.REJECTED, order=order, reason=str(e))

        if not transition.applied:
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=transition.order)

        await self.ledger.reverse_order(order.order_id, "Payment refunded", actor=event.provider)
        outcomes = await self.side_effects.on_refunded(transition.order, correlation_id)
        log.info("refund_recorded", refund_id=refund.refund_id)
        return SettlementResult(status=SettlementStatus.SETTLED, order=transition.order, side_effects=outcomes)

    # =========================================================================
    # SIDE CHANNEL: CANCELLATION & REFUND
    # =========================================================================

    async def cancel(self, order_id: str, actor: str, reason: str) -> SettlementResult:
        """
        Cancel an order on behalf of a user or staff member.

        Shares the state machine gate with settlement, so a late payment
        success after this point is rejected as stale.
        """
        correlation_id = f"cnl_{uuid.uuid4().hex[:16]}"
        log = self._get_logger(correlation_id).bind(order_id=order_id, actor=actor)

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        transition = await self.state_machine.cancel(order, actor, reason)
        if not transition.applied:
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=transition.order,
                                    reason="already cancelled")

        offsets = await self.ledger.reverse_order(order_id, f"Order cancelled: {reason}", actor=actor)
        outcomes = await self.side_effects.on_cancelled(transition.order, correlation_id)
        log.info("order_cancelled",
                 payment_status=transition.order.payment.payment_status.value,
                 coin_reversals=len(offsets))
        return SettlementResult(status=SettlementStatus.SETTLED, order=transition.order, side_effects=outcomes)

    async def refund(
        self,
        order_id: str,
        amount: Optional[Decimal] = None,
        reason: str = "Refund requested",
        actor: Optional[str] = None,
    ) -> SettlementResult:
        """
        Refund a paid (or refund-pending) order at the gateway, then record it.

        The refund is claimed on the order before the gateway is called, so
        concurrent requests move money at most once. A gateway refusal
        releases the claim; a timeout keeps it, since the gateway may have
        refunded, until the refund notice arrives or the claim goes stale.
        """
        correlation_id = f"rfd_{uuid.uuid4().hex[:16]}"
        log = self._get_logger(correlation_id).bind(order_id=order_id)

        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        status = order.payment.payment_status
        if status == PaymentStatus.REFUNDED:
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=order, reason="already refunded")
        if status not in (PaymentStatus.PAID, PaymentStatus.REFUND_PENDING):
            raise RefundNotAllowed(order_id, f"payment is {status.value}")
        if not order.payment.gateway_payment_id:
            raise RefundNotAllowed(order_id, "no gateway payment id")

        amount = amount if amount is not None else order.total_price
        if amount <= 0 or amount > order.total_price:
            raise RefundNotAllowed(order_id, f"invalid refund amount {amount}")

        client = self.registry.get(order.payment.provider.value, order.hotel_id)

        claim_id = f"rfc_{uuid.uuid4().hex[:16]}"
        claim = await self.state_machine.claim_refund(order, claim_id)
        if not claim.applied:
            current = claim.order
            reason = ("already refunded" if current.payment.payment_status == PaymentStatus.REFUNDED
                      else "refund in progress")
            log.info("refund_short_circuit", reason=reason)
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=current, reason=reason)
        order = claim.order

        try:
            receipt = await asyncio.wait_for(
                client.refund(order.payment.gateway_payment_id, amount,
                              gateway_order_id=client.status_key(order.payment)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("refund_outcome_unknown", claim_id=claim_id)
            raise GatewayTimeout(client.provider, "refund")
        except GatewayTimeout:
            log.warning("refund_outcome_unknown", claim_id=claim_id)
            raise
        except GatewayError as e:
            await self.state_machine.release_refund(order, claim_id)
            log.warning("refund_claim_released", claim_id=claim_id, error=str(e))
            raise

        transition = await self.state_machine.mark_refunded(order, RefundInfo(
            refund_id=receipt.refund_id,
            amount=receipt.amount,
            reason=reason,
            initiated_by=actor,
        ))
        if not transition.applied:
            return SettlementResult(status=SettlementStatus.ALREADY_SETTLED, order=transition.order)

        await self.ledger.reverse_order(order_id, f"Refund: {reason}", actor=actor)
        outcomes = await self.side_effects.on_refunded(transition.order, correlation_id)
        log.info("order_refunded", refund_id=receipt.refund_id, amount=str(receipt.amount))
        return SettlementResult(status=SettlementStatus.SETTLED, order=transition.order, side_effects=outcomes)
