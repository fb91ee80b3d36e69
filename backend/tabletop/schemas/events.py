"""
Payment events and pipeline results.

A ``PaymentEvent`` is the canonical shape every inbound notification is
normalized into, whether it arrived as a webhook, a browser redirect or was
synthesized by the status poller.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from tabletop.schemas.domain import (
    CoinLedgerEntry,
    LedgerEntryType,
    Order,
    PaymentStatus,
    utcnow,
)


class PaymentEventKind(str, Enum):
    WEBHOOK = "webhook"
    REDIRECT_CALLBACK = "redirect_callback"
    STATUS_POLL = "status_poll"


class OrderRefKind(str, Enum):
    TRANSACTION_ID = "transaction_id"
    ORDER_ID = "order_id"
    GATEWAY_ORDER_ID = "gateway_order_id"


class OrderRef(BaseModel):
    kind: OrderRefKind
    value: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.value}"


class PaymentEvent(BaseModel):
    """Normalized, provider-neutral payment notification."""

    event_id: str = ""
    kind: PaymentEventKind
    provider: str
    hotel_id: Optional[str] = None
    order_ref: OrderRef
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    signature_verified: bool = False
    raw_status: Optional[str] = None
    amount: Optional[Decimal] = None
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def mapped_status(self) -> Optional[PaymentStatus]:
        if self.raw_status is None:
            return None
        return map_gateway_status(self.raw_status)


# =============================================================================
# GATEWAY STATUS
# =============================================================================

_PAID_STATUSES = {
    "captured", "authorized", "paid", "success", "succeeded", "complete",
    "completed", "txn_success", "payment_success",
}
_FAILED_STATUSES = {
    "failed", "failure", "txn_failure", "payment_error", "payment_declined",
    "declined", "expired", "canceled",
}
_REFUNDED_STATUSES = {"refunded"}


def map_gateway_status(raw_status: str) -> PaymentStatus:
    """Map a gateway-native status onto the order payment status."""
    status = (raw_status or "").strip().lower()
    if status in _PAID_STATUSES:
        return PaymentStatus.PAID
    if status in _FAILED_STATUSES:
        return PaymentStatus.FAILED
    if status in _REFUNDED_STATUSES:
        return PaymentStatus.REFUNDED
    return PaymentStatus.PENDING


class GatewayAttempt(BaseModel):
    """One payment attempt as reported by the gateway, newest first."""

    attempt_id: str
    status: str
    amount: Optional[Decimal] = None
    method: Optional[str] = None
    error_description: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def mapped_status(self) -> PaymentStatus:
        return map_gateway_status(self.status)


class GatewayOrder(BaseModel):
    gateway_order_id: str
    amount: Decimal
    currency: str = "INR"
    receipt: str
    redirect_url: Optional[str] = None
    raw: dict = Field(default_factory=dict)


class RefundReceipt(BaseModel):
    refund_id: str
    gateway_payment_id: str
    amount: Decimal
    status: str = "processed"


# =============================================================================
# RESULTS
# =============================================================================

class SettlementStatus(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    REJECTED = "rejected"
    FAILED = "failed"
    PENDING = "pending"


class LedgerFailure(BaseModel):
    type: LedgerEntryType
    amount: int
    error: str


class LedgerReport(BaseModel):
    applied: list[CoinLedgerEntry] = Field(default_factory=list)
    skipped: list[LedgerEntryType] = Field(default_factory=list)
    failed: list[LedgerFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class SideEffectOutcome(BaseModel):
    name: str
    success: bool
    skipped: bool = False
    detail: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class SettlementResult(BaseModel):
    status: SettlementStatus
    order: Optional[Order] = None
    ledger: Optional[LedgerReport] = None
    side_effects: list[SideEffectOutcome] = Field(default_factory=list)
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (
            SettlementStatus.SETTLED,
            SettlementStatus.ALREADY_SETTLED,
            SettlementStatus.REJECTED,
        )


class ReconciliationResult(BaseModel):
    order_id: str
    synced: bool
    status_changed: bool
    previous_status: PaymentStatus
    current_status: PaymentStatus
    settlement: Optional[SettlementResult] = None


class CoinSummary(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_used: int
    expiring_soon: int
