"""
Fulfillment side effects.

Everything that happens after a payment outcome is durable: staff
assignment, cart completion or restore, invoicing, the accounting record and
event emission. Steps run concurrently and each one's failure is captured in
its own ``SideEffectOutcome``; none of them can undo the payment transition.
"""

import asyncio
from datetime import timedelta
from typing import Awaitable, Optional

import structlog

from tabletop.config import settings
from tabletop.errors import ActiveCartExists
from tabletop.pipeline.event_bus import EventType, NotificationBus
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import (
    CartItem,
    CartStatus,
    InvoiceEmailStatus,
    InvoiceJob,
    Order,
    SideEffectOutcome,
    TransactionRecord,
)
from tabletop.schemas.domain import PAYMENT_TO_TRANSACTION_STATUS, utcnow
from tabletop.services import IAssignmentService, IInvoiceService, Recipient
from tabletop.storage import (
    ICartRepository,
    IInvoiceJobQueue,
    ITransactionRepository,
    IUserRepository,
)

Step = tuple[str, Awaitable[SideEffectOutcome]]


def _skipped(name: str, detail: str) -> SideEffectOutcome:
    return SideEffectOutcome(name=name, success=True, skipped=True, detail=detail)


def merge_items(into: list[CartItem], extra: list[CartItem]) -> list[CartItem]:
    merged = {item.food_item_id: item for item in into}
    for item in extra:
        existing = merged.get(item.food_item_id)
        if existing is None:
            merged[item.food_item_id] = item
        else:
            merged[item.food_item_id] = existing.model_copy(
                update={"quantity": existing.quantity + item.quantity}
            )
    return list(merged.values())


class FulfillmentSideEffects:

    def __init__(
        self,
        state_machine: OrderStateMachine,
        carts: ICartRepository,
        users: IUserRepository,
        transactions: ITransactionRepository,
        invoice_jobs: IInvoiceJobQueue,
        assignment: IAssignmentService,
        invoices: IInvoiceService,
        notifications: NotificationBus,
    ):
        self.state_machine = state_machine
        self.carts = carts
        self.users = users
        self.transactions = transactions
        self.invoice_jobs = invoice_jobs
        self.assignment = assignment
        self.invoices = invoices
        self.notifications = notifications
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(component="side_effects", correlation_id=correlation_id)

    async def _run(self, steps: list[Step], correlation_id: Optional[str]) -> list[SideEffectOutcome]:
        log = self._get_logger(correlation_id)
        results = await asyncio.gather(*(coro for _, coro in steps), return_exceptions=True)

        outcomes = []
        for (name, _), result in zip(steps, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                log.error("side_effect_failed", step=name, error=str(result), error_type=type(result).__name__)
                outcomes.append(SideEffectOutcome(name=name, success=False, detail=str(result)))
            else:
                outcomes.append(result)
        return outcomes

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def on_settled(self, order: Order, correlation_id: Optional[str] = None) -> list[SideEffectOutcome]:
        return await self._run([
            ("staff_assignment", self.assign_staff(order)),
            ("cart_completion", self.complete_cart(order)),
            ("invoice", self.send_invoice(order)),
            ("transaction_record", self.record_transaction(order)),
            ("settled_event", self.emit(EventType.PAYMENT_SETTLED, order, correlation_id)),
        ], correlation_id)

    async def on_failed(self, order: Order, correlation_id: Optional[str] = None) -> list[SideEffectOutcome]:
        return await self._run([
            ("cart_restore", self.restore_cart(order)),
            ("transaction_record", self.record_transaction(order)),
            ("failed_event", self.emit(EventType.PAYMENT_FAILED, order, correlation_id)),
        ], correlation_id)

    async def on_cancelled(self, order: Order, correlation_id: Optional[str] = None) -> list[SideEffectOutcome]:
        return await self._run([
            ("cart_restore", self.restore_cart(order)),
            ("transaction_record", self.record_transaction(order)),
            ("cancelled_event", self.emit(EventType.ORDER_CANCELLED, order, correlation_id)),
        ], correlation_id)

    async def on_refunded(self, order: Order, correlation_id: Optional[str] = None) -> list[SideEffectOutcome]:
        return await self._run([
            ("transaction_record", self.record_transaction(order)),
            ("refunded_event", self.emit(EventType.ORDER_REFUNDED, order, correlation_id)),
        ], correlation_id)

    # =========================================================================
    # STEPS
    # =========================================================================

    async def assign_staff(self, order: Order) -> SideEffectOutcome:
        name = "staff_assignment"
        if order.staff_id:
            return _skipped(name, "staff already assigned")

        result = await self.assignment.assign_order(order)
        if not result.success or result.assignment is None:
            return SideEffectOutcome(name=name, success=False, detail=result.reason or "assignment failed")

        await self.state_machine.annotate(order, set_once={
            "staff_id": result.assignment.staff_id,
            "assigned_at": result.assignment.assigned_at,
        })
        return SideEffectOutcome(name=name, success=True, data={"staff_id": result.assignment.staff_id})

    async def complete_cart(self, order: Order) -> SideEffectOutcome:
        """checkout -> completed, items cleared."""
        name = "cart_completion"
        cart = await self.carts.find_checkout_cart(order.order_id)
        if cart is None:
            return _skipped(name, "no checkout cart")
        if cart.status != CartStatus.CHECKOUT:
            return _skipped(name, f"cart is {cart.status.value}")

        updated = cart.model_copy(update={
            "status": CartStatus.COMPLETED,
            "items": [],
            "completed_at": utcnow(),
        })
        if not await self.carts.transition(CartStatus.CHECKOUT, updated):
            current = await self.carts.get(cart.cart_id)
            return _skipped(name, f"cart moved to {current.status.value if current else 'missing'}")
        return SideEffectOutcome(name=name, success=True, data={"cart_id": cart.cart_id})

    async def restore_cart(self, order: Order) -> SideEffectOutcome:
        """
        checkout -> active so the user can retry.

        When the owner already has another active cart the checkout items are
        merged into it and the checkout cart is abandoned.
        """
        name = "cart_restore"
        cart = await self.carts.find_checkout_cart(order.order_id)
        if cart is None or cart.status != CartStatus.CHECKOUT:
            return _skipped(name, "no checkout cart")

        active = await self.carts.find_active(cart.user_id, cart.hotel_id, cart.branch_id)
        if active is None:
            restored = cart.model_copy(update={"status": CartStatus.ACTIVE, "checkout_order_id": None})
            try:
                moved = await self.carts.transition(CartStatus.CHECKOUT, restored)
            except ActiveCartExists:
                # Another restore took the owner's active slot first
                active = await self.carts.find_active(cart.user_id, cart.hotel_id, cart.branch_id)
                if active is None:
                    return SideEffectOutcome(name=name, success=False, detail="active cart vanished during restore")
            else:
                if not moved:
                    return _skipped(name, "cart already moved")
                return SideEffectOutcome(name=name, success=True, data={"cart_id": cart.cart_id})

        abandoned = cart.model_copy(update={"status": CartStatus.ABANDONED})
        if not await self.carts.transition(CartStatus.CHECKOUT, abandoned):
            return _skipped(name, "cart already moved")
        merged = active.model_copy(update={"items": merge_items(active.items, cart.items), "updated_at": utcnow()})
        await self.carts.save(merged)
        return SideEffectOutcome(
            name=name,
            success=True,
            data={"cart_id": active.cart_id, "merged_from": cart.cart_id},
        )

    async def send_invoice(self, order: Order) -> SideEffectOutcome:
        """Generate once; a failed send is queued for retry instead of failing."""
        name = "invoice"
        if order.invoice_number:
            return _skipped(name, "invoice already generated")

        invoice = await self.invoices.generate(order)
        result = await self.state_machine.annotate(order, set_once={"invoice_number": invoice.invoice_number})
        if result.order.invoice_number != invoice.invoice_number:
            return _skipped(name, "invoice generated concurrently")
        order = result.order

        user = await self.users.get(order.user_id)
        if user is None or not user.email:
            await self.state_machine.annotate(order, fields={"invoice_email_status": InvoiceEmailStatus.NO_EMAIL})
            return SideEffectOutcome(name=name, success=True, detail="no email on file",
                                     data={"invoice_number": invoice.invoice_number})

        recipient = Recipient(email=user.email, name=user.name or "Guest")
        try:
            status = await self.invoices.send(invoice, recipient)
        except Exception as e:
            job = await self.invoice_jobs.enqueue(InvoiceJob(
                order_id=order.order_id,
                invoice_number=invoice.invoice_number,
                recipient_email=recipient.email,
                recipient_name=recipient.name,
                max_attempts=settings.INVOICE_MAX_ATTEMPTS,
                last_error=str(e),
                scheduled_for=utcnow() + timedelta(minutes=settings.INVOICE_RETRY_BACKOFF_MINUTES[0]),
            ))
            await self.state_machine.annotate(order, fields={"invoice_email_status": InvoiceEmailStatus.QUEUED})
            await self.notifications.emit(
                EventType.INVOICE_QUEUED,
                {"order_id": order.order_id, "job_id": job.job_id, "error": str(e)},
                hotel_id=order.hotel_id,
            )
            self._get_logger().warning("invoice_send_queued", order_id=order.order_id, job_id=job.job_id, error=str(e))
            return SideEffectOutcome(name=name, success=True, detail="send failed, queued for retry",
                                     data={"invoice_number": invoice.invoice_number, "send_status": "queued",
                                           "job_id": job.job_id})

        await self.state_machine.annotate(order, fields={"invoice_email_status": InvoiceEmailStatus.SENT})
        return SideEffectOutcome(name=name, success=True,
                                 data={"invoice_number": invoice.invoice_number, "send_status": status.value})

    async def record_transaction(self, order: Order) -> SideEffectOutcome:
        record = await self.transactions.upsert(TransactionRecord(
            order_id=order.order_id,
            user_id=order.user_id,
            hotel_id=order.hotel_id,
            branch_id=order.branch_id,
            amount=order.total_price,
            provider=order.payment.provider,
            status=PAYMENT_TO_TRANSACTION_STATUS[order.payment.payment_status],
            transaction_id=order.payment.transaction_id,
            gateway_payment_id=order.payment.gateway_payment_id,
        ))
        return SideEffectOutcome(name="transaction_record", success=True,
                                 data={"record_id": record.record_id, "status": record.status.value})

    async def emit(self, event_type: EventType, order: Order, correlation_id: Optional[str] = None) -> SideEffectOutcome:
        published = await self.notifications.emit(
            event_type,
            {
                "order_id": order.order_id,
                "user_id": order.user_id,
                "amount": str(order.total_price),
                "provider": order.payment.provider.value,
                "transaction_id": order.payment.transaction_id,
                "payment_status": order.payment.payment_status.value,
                "order_status": order.status.value,
            },
            correlation_id=correlation_id,
            hotel_id=order.hotel_id,
        )
        return SideEffectOutcome(name=f"{event_type.value}_event", success=published)
