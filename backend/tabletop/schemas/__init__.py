from tabletop.schemas.domain import (
    APPLIED_ENTRY_STATUSES,
    Cart,
    CartItem,
    CartStatus,
    CoinEffect,
    CoinLedgerEntry,
    CoinSettings,
    Invoice,
    InvoiceEmailStatus,
    InvoiceJob,
    InvoiceJobStatus,
    LedgerEntryDraft,
    LedgerEntryStatus,
    LedgerEntryType,
    Order,
    OrderPayment,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    RefundInfo,
    TransactionRecord,
    TransactionStatus,
    User,
)
from tabletop.schemas.events import (
    CoinSummary,
    GatewayAttempt,
    GatewayOrder,
    LedgerReport,
    OrderRef,
    OrderRefKind,
    PaymentEvent,
    PaymentEventKind,
    ReconciliationResult,
    RefundReceipt,
    SettlementResult,
    SettlementStatus,
    SideEffectOutcome,
    map_gateway_status,
)
