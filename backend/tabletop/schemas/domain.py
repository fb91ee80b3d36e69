"""
Domain Models
=============
Orders, coin ledger entries, carts, users, accounting records and the
deferred invoice queue.

All models are pydantic v2; status fields are ``str`` enums so they serialize
as plain strings in JSON documents and log lines.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Fulfillment progress; cancelled sits outside the ladder
ORDER_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PREPARING: 2,
    OrderStatus.READY: 3,
    OrderStatus.COMPLETED: 4,
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.REFUND_PENDING,
    PaymentStatus.REFUNDED,
    PaymentStatus.CANCELLED,
})


class PaymentProvider(str, Enum):
    RAZORPAY = "razorpay"
    PHONEPE = "phonepe"
    PAYTM = "paytm"
    STRIPE = "stripe"
    CASH = "cash"


class LedgerEntryType(str, Enum):
    EARNED = "earned"        # reward coins from a paid order
    USED = "used"            # coins spent at checkout
    REFUNDED = "refunded"    # coins given back after cancellation
    EXPIRED = "expired"      # offset for an expired earned entry
    ADJUSTED = "adjusted"    # admin bonus/penalty or reward reversal


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"
    EXPIRED = "expired"


# Statuses whose amount is part of the cached balance
APPLIED_ENTRY_STATUSES = frozenset({
    LedgerEntryStatus.COMPLETED,
    LedgerEntryStatus.REVERSED,
    LedgerEntryStatus.EXPIRED,
})


class CartStatus(str, Enum):
    ACTIVE = "active"
    CHECKOUT = "checkout"
    ABANDONED = "abandoned"
    CONVERTED = "converted"
    COMPLETED = "completed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class InvoiceEmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    QUEUED = "queued"
    FAILED = "failed"
    NO_EMAIL = "no_email"
    GENERATION_FAILED = "generation_failed"


class InvoiceJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


# =============================================================================
# ORDER
# =============================================================================

class RefundInfo(BaseModel):
    refund_id: str
    amount: Decimal
    reason: str = "Refund requested"
    initiated_by: Optional[str] = None
    initiated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class OrderPayment(BaseModel):
    provider: PaymentProvider = PaymentProvider.RAZORPAY
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str = Field(default_factory=lambda: Order.generate_transaction_id())
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    refund: Optional[RefundInfo] = None
    # Set while one caller owns the outbound gateway refund
    refund_claim_id: Optional[str] = None
    refund_claimed_at: Optional[datetime] = None


class Order(BaseModel):
    """Core order entity. Mutated only through conditional writes."""

    order_id: str = Field(default_factory=lambda: new_id("ORD"))
    user_id: str
    hotel_id: str
    branch_id: Optional[str] = None
    table_number: Optional[str] = None

    status: OrderStatus = OrderStatus.PENDING
    payment: OrderPayment = Field(default_factory=OrderPayment)

    total_price: Decimal
    coins_used: int = Field(default=0, ge=0)
    coin_discount: Decimal = Decimal("0")
    reward_coins: int = Field(default=0, ge=0)

    staff_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    invoice_number: Optional[str] = None
    invoice_email_status: Optional[InvoiceEmailStatus] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1  # Optimistic locking

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment.payment_status == PaymentStatus.PAID

    @staticmethod
    def generate_transaction_id() -> str:
        stamp = utcnow().strftime("%Y%m%d%H%M%S")
        return f"TXN-{stamp}-{uuid.uuid4().hex[:8].upper()}"

    def with_changes(
        self,
        order_changes: Optional[dict[str, Any]] = None,
        payment_changes: Optional[dict[str, Any]] = None,
    ) -> "Order":
        """Copy with field changes applied and the version bumped."""
        payment = self.payment
        if payment_changes:
            payment = payment.model_copy(update=payment_changes)
        update = dict(order_changes or {})
        update.update({
            "payment": payment,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })
        return self.model_copy(update=update)


# =============================================================================
# COIN LEDGER
# =============================================================================

_POSITIVE_TYPES = {LedgerEntryType.EARNED, LedgerEntryType.REFUNDED}
_NEGATIVE_TYPES = {LedgerEntryType.USED, LedgerEntryType.EXPIRED}


class CoinLedgerEntry(BaseModel):
    """One immutable coin balance change. Only ``status`` ever flips."""

    entry_id: str = Field(default_factory=lambda: new_id("CTX"))
    user_id: str
    type: LedgerEntryType
    amount: int
    balance_after: int = Field(ge=0)
    order_id: Optional[str] = None
    status: LedgerEntryStatus = LedgerEntryStatus.COMPLETED
    expires_at: Optional[datetime] = None
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    original_entry_id: Optional[str] = None
    adjusted_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def balance_before(self) -> int:
        return self.balance_after - self.amount


class LedgerEntryDraft(BaseModel):
    """Entry before the balance snapshot is known."""

    user_id: str
    type: LedgerEntryType
    amount: int
    order_id: Optional[str] = None
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    original_entry_id: Optional[str] = None
    adjusted_by: Optional[str] = None
    # Debit at most the current balance instead of failing (expiry sweep)
    clamp_to_balance: bool = False

    @model_validator(mode="after")
    def _check_sign(self) -> "LedgerEntryDraft":
        if self.type in _POSITIVE_TYPES and self.amount < 0:
            raise ValueError(f"{self.type.value} entries must not be negative")
        if self.type in _NEGATIVE_TYPES and self.amount > 0:
            raise ValueError(f"{self.type.value} entries must not be positive")
        if self.expires_at is not None and self.type != LedgerEntryType.EARNED:
            raise ValueError("only earned entries can expire")
        return self

    def dedupe_key(self) -> Optional[str]:
        if self.original_entry_id:
            return f"original:{self.original_entry_id}:{self.type.value}"
        if self.order_id:
            return f"order:{self.order_id}:{self.type.value}"
        return None

    def amount_against(self, balance: int) -> int:
        """Amount actually applied on top of ``balance``."""
        if self.clamp_to_balance and self.amount < 0:
            return max(self.amount, -balance)
        return self.amount

    def to_entry(self, balance_before: int) -> CoinLedgerEntry:
        amount = self.amount_against(balance_before)
        return CoinLedgerEntry(
            user_id=self.user_id,
            type=self.type,
            amount=amount,
            balance_after=balance_before + amount,
            order_id=self.order_id,
            expires_at=self.expires_at,
            description=self.description,
            metadata=self.metadata,
            original_entry_id=self.original_entry_id,
            adjusted_by=self.adjusted_by,
        )


class CoinEffect(BaseModel):
    """A coin movement an order asks the ledger to apply."""

    type: LedgerEntryType
    amount: int
    expires_in_days: Optional[int] = None
    description: str = ""


class CoinSettings(BaseModel):
    """Admin coin configuration relevant at settlement time."""

    coin_expiry_days: int = Field(default=365, ge=0)  # 0 = never expire
    is_active: bool = True


# =============================================================================
# USERS, CARTS, ACCOUNTING
# =============================================================================

class User(BaseModel):
    user_id: str = Field(default_factory=lambda: new_id("USR"))
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    coins: int = Field(default=0, ge=0)  # cached balance, ledger-maintained


class CartItem(BaseModel):
    food_item_id: str
    name: str
    quantity: int = Field(default=1, ge=1)
    price: Decimal


class Cart(BaseModel):
    cart_id: str = Field(default_factory=lambda: new_id("CRT"))
    user_id: str
    hotel_id: str
    branch_id: Optional[str] = None
    items: list[CartItem] = Field(default_factory=list)
    status: CartStatus = CartStatus.ACTIVE
    checkout_order_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def owner_key(self) -> tuple[str, str, Optional[str]]:
        return (self.user_id, self.hotel_id, self.branch_id)


class TransactionRecord(BaseModel):
    """Accounting record, one per order, upserted on every payment outcome."""

    record_id: str = Field(default_factory=lambda: new_id("TRX"))
    order_id: str
    user_id: str
    hotel_id: str
    branch_id: Optional[str] = None
    amount: Decimal
    provider: PaymentProvider
    status: TransactionStatus = TransactionStatus.PENDING
    transaction_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


PAYMENT_TO_TRANSACTION_STATUS = {
    PaymentStatus.PAID: TransactionStatus.SUCCESS,
    PaymentStatus.FAILED: TransactionStatus.FAILED,
    PaymentStatus.REFUNDED: TransactionStatus.REFUNDED,
    PaymentStatus.CANCELLED: TransactionStatus.FAILED,
    PaymentStatus.PENDING: TransactionStatus.PENDING,
    PaymentStatus.REFUND_PENDING: TransactionStatus.SUCCESS,
}


# =============================================================================
# INVOICES
# =============================================================================

class Invoice(BaseModel):
    invoice_number: str
    order_id: str
    amount: Decimal
    customer_name: str = "Guest"
    customer_email: Optional[str] = None
    generated_at: datetime = Field(default_factory=utcnow)
    document: bytes = b""

    @staticmethod
    def generate_number(order_id: str) -> str:
        stamp = int(utcnow().timestamp() * 1000)
        return f"INV-{stamp}-{order_id[-8:].upper()}"


class InvoiceJob(BaseModel):
    """Deferred invoice email, retried with backoff."""

    job_id: str = Field(default_factory=lambda: new_id("JOB"))
    order_id: str
    invoice_number: str
    recipient_email: str
    recipient_name: str = ""
    status: InvoiceJobStatus = InvoiceJobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    scheduled_for: datetime = Field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_retriable(self) -> bool:
        return self.attempts < self.max_attempts and self.status != InvoiceJobStatus.FAILED

    def schedule_retry(self, backoff_minutes: tuple[int, ...], now: Optional[datetime] = None) -> "InvoiceJob":
        """Next attempt after a failure; gives up once attempts are exhausted."""
        now = now or utcnow()
        if self.attempts >= self.max_attempts:
            return self.model_copy(update={"status": InvoiceJobStatus.FAILED})
        index = min(self.attempts, len(backoff_minutes) - 1)
        return self.model_copy(update={
            "status": InvoiceJobStatus.PENDING,
            "scheduled_for": now + timedelta(minutes=backoff_minutes[index]),
        })
