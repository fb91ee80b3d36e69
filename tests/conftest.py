"""
Shared fixtures: an in-memory container wired to a scripted gateway.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest

from tabletop.bootstrap import Container, build_container, memory_repositories
from tabletop.gateways import GatewayClient, GatewayCredentials, GatewayRegistry
from tabletop.pipeline.event_bus import InMemoryEventBus
from tabletop.schemas import (
    Cart,
    CartItem,
    CartStatus,
    GatewayAttempt,
    GatewayOrder,
    Order,
    OrderPayment,
    OrderRef,
    OrderRefKind,
    PaymentEvent,
    PaymentEventKind,
    PaymentProvider,
    RefundReceipt,
    User,
)
from tabletop.services import (
    EmailMessage,
    IEmailSender,
    InvoiceService,
    RosterAssignmentService,
)

HOTEL = "HTL-1"
BRANCH = "BR-1"


# ── Shared stubs ───────────────────────────────────────────────

class FakeGateway(GatewayClient):
    """Scripted gateway: attempts per gateway order id, optional delay."""

    provider = "razorpay"
    signature_header = "x-fake-signature"

    def __init__(self):
        super().__init__(GatewayCredentials(provider="razorpay"))
        self.attempts: dict[str, list[GatewayAttempt]] = {}
        self.delay: float = 0
        self.status_calls: list[str] = []
        self.refunds: list[tuple[str, Optional[Decimal]]] = []
        self.refund_delay: float = 0
        self.refund_error: Optional[Exception] = None

    def set_attempts(self, gateway_order_id: str, *statuses: str):
        self.attempts[gateway_order_id] = [
            GatewayAttempt(attempt_id=f"pay_{gateway_order_id}_{i}", status=status)
            for i, status in enumerate(statuses)
        ]

    async def create_order(self, amount, currency, receipt, metadata=None) -> GatewayOrder:
        return GatewayOrder(gateway_order_id=f"order_{receipt}", amount=amount, currency=currency, receipt=receipt)

    async def fetch_status(self, gateway_order_id: str) -> list[GatewayAttempt]:
        self.status_calls.append(gateway_order_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.attempts.get(gateway_order_id, []))

    async def refund(self, gateway_payment_id, amount=None, gateway_order_id=None) -> RefundReceipt:
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_error:
            raise self.refund_error
        self.refunds.append((gateway_payment_id, amount))
        return RefundReceipt(
            refund_id=f"rfnd_{len(self.refunds)}",
            gateway_payment_id=gateway_payment_id,
            amount=amount or Decimal("0"),
        )

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return signature == "valid"

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        body = json.loads(payload)
        return PaymentEvent(
            kind=PaymentEventKind.WEBHOOK,
            provider=self.provider,
            order_ref=OrderRef(kind=OrderRefKind.GATEWAY_ORDER_ID, value=body["order_id"]),
            gateway_order_id=body["order_id"],
            gateway_payment_id=body.get("payment_id"),
            raw_status=body["status"],
        )


class RecordingSender(IEmailSender):
    def __init__(self):
        self.sent: list[EmailMessage] = []
        self.fail = False

    async def send(self, message: EmailMessage) -> str:
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append(message)
        return message.message_id


def webhook_event(gateway_order_id: str, status: str = "captured", payment_id: str = "pay_1",
                  event_id: str = "") -> PaymentEvent:
    return PaymentEvent(
        event_id=event_id,
        kind=PaymentEventKind.WEBHOOK,
        provider="razorpay",
        order_ref=OrderRef(kind=OrderRefKind.GATEWAY_ORDER_ID, value=gateway_order_id),
        gateway_order_id=gateway_order_id,
        gateway_payment_id=payment_id,
        signature_verified=True,
        raw_status=status,
    )


# ── Fixtures ───────────────────────────────────────────────────

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
async def assignment() -> RosterAssignmentService:
    service = RosterAssignmentService()
    await service.clock_in("STF-1", HOTEL, BRANCH)
    return service


@pytest.fixture
async def container(gateway, sender, assignment) -> Container:
    registry = GatewayRegistry()
    registry.register_client(gateway)
    bus = InMemoryEventBus()
    await bus.connect()
    c = build_container(
        memory_repositories(),
        registry=registry,
        bus=bus,
        assignment=assignment,
        invoices=InvoiceService(sender=sender),
    )
    yield c
    await bus.disconnect()


@pytest.fixture
def make_user(container):
    async def _make(user_id: str = "USR-1", coins: int = 0, email: Optional[str] = "diner@example.com") -> User:
        await container.repositories.users.save(User(user_id=user_id, name="Diner", email=email))
        if coins:
            await container.ledger.adjust(user_id, coins, "opening balance", "ADM-1")
        return await container.repositories.users.get(user_id)
    return _make


@pytest.fixture
def make_order(container):
    async def _make(
        user_id: str = "USR-1",
        total: str = "500",
        coins_used: int = 0,
        reward_coins: int = 0,
        gateway_order_id: Optional[str] = "order_A",
        provider: PaymentProvider = PaymentProvider.RAZORPAY,
        with_cart: bool = True,
        **fields: Any,
    ) -> Order:
        order = Order(
            user_id=user_id,
            hotel_id=HOTEL,
            branch_id=BRANCH,
            total_price=Decimal(total),
            coins_used=coins_used,
            coin_discount=Decimal(coins_used),
            reward_coins=reward_coins,
            payment=OrderPayment(provider=provider, gateway_order_id=gateway_order_id),
            **fields,
        )
        await container.repositories.orders.save(order)
        if with_cart:
            await container.repositories.carts.save(Cart(
                user_id=user_id,
                hotel_id=HOTEL,
                branch_id=BRANCH,
                status=CartStatus.CHECKOUT,
                checkout_order_id=order.order_id,
                items=[CartItem(food_item_id="FI-1", name="Masala Dosa", quantity=2, price=Decimal("250"))],
            ))
        return order
    return _make
