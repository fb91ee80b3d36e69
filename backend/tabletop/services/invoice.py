"""
Invoice collaborator: build the invoice for a paid order and email it.

Email delivery itself sits behind ``IEmailSender``; the default sender only
records and logs what it would send.
"""

import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from tabletop.schemas import Invoice, Order
from tabletop.schemas.domain import utcnow


class SendStatus(str, Enum):
    SENT = "sent"
    QUEUED = "queued"


class Recipient(BaseModel):
    email: str
    name: str = "Guest"


class EmailMessage(BaseModel):
    message_id: str
    to: str
    subject: str
    body: str
    attachment_name: Optional[str] = None


class IEmailSender(ABC):

    @abstractmethod
    async def send(self, message: EmailMessage) -> str:
        """Deliver the message; returns the provider message id. Raises on failure."""
        pass


class LoggingEmailSender(IEmailSender):
    """Records messages instead of delivering them."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self._logger = structlog.get_logger().bind(component="email_sender")

    async def send(self, message: EmailMessage) -> str:
        self.sent.append(message)
        self._logger.info("email_sent", to=message.to, subject=message.subject, message_id=message.message_id)
        return message.message_id


class IInvoiceService(ABC):

    @abstractmethod
    async def generate(self, order: Order, invoice_number: Optional[str] = None) -> Invoice:
        pass

    @abstractmethod
    async def send(self, invoice: Invoice, recipient: Recipient) -> SendStatus:
        pass


class InvoiceService(IInvoiceService):

    def __init__(self, sender: Optional[IEmailSender] = None):
        self.sender = sender or LoggingEmailSender()
        self._logger = structlog.get_logger().bind(component="invoice_service")

    async def generate(self, order: Order, invoice_number: Optional[str] = None) -> Invoice:
        subtotal = order.total_price + order.coin_discount
        lines = [
            f"Invoice {invoice_number or ''}".strip(),
            f"Order: {order.order_id}",
            f"Transaction: {order.payment.transaction_id}",
            f"Date: {utcnow().date().isoformat()}",
            f"Subtotal: {subtotal:.2f}",
        ]
        if order.coins_used:
            lines.append(f"Coins redeemed: {order.coins_used} (-{order.coin_discount:.2f})")
        lines.append(f"Total paid: {order.total_price:.2f}")
        if order.reward_coins:
            lines.append(f"Coins earned: {order.reward_coins}")

        invoice = Invoice(
            invoice_number=invoice_number or Invoice.generate_number(order.order_id),
            order_id=order.order_id,
            amount=Decimal(order.total_price),
            document="\n".join(lines).encode(),
        )
        self._logger.info("invoice_generated", order_id=order.order_id, invoice_number=invoice.invoice_number)
        return invoice

    async def send(self, invoice: Invoice, recipient: Recipient) -> SendStatus:
        message = EmailMessage(
            message_id=f"msg-{uuid.uuid4().hex[:16]}",
            to=recipient.email,
            subject=f"Your invoice {invoice.invoice_number}",
            body=f"Hi {recipient.name},\n\n{invoice.document.decode()}",
            attachment_name=f"{invoice.invoice_number}.txt",
        )
        await self.sender.send(message)
        return SendStatus.SENT
