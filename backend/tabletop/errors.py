"""
Settlement error taxonomy.

Only ``SignatureInvalid``, ``MalformedEvent`` and ``GatewayTimeout`` ever reach
the gateway as a non-success response. Everything else is either a
successful no-op from the gateway's point of view or is caught and logged
inside the pipeline.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for every error raised by the pipeline."""

    retryable: bool = False


class SignatureInvalid(SettlementError):
    """Notification signature did not verify against the shared secret."""

    def __init__(self, provider: str, detail: str = "signature mismatch"):
        self.provider = provider
        self.detail = detail
        super().__init__(f"Invalid {provider} signature: {detail}")


class MalformedEvent(SettlementError):
    """Notification payload has no recognizable shape."""

    def __init__(self, detail: str, available_keys: Optional[list[str]] = None):
        self.detail = detail
        self.available_keys = available_keys or []
        super().__init__(detail)


class UnsupportedProvider(SettlementError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported payment provider: {provider}")


class OrderNotFound(SettlementError):
    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Order not found for reference: {reference}")


class StaleEvent(SettlementError):
    """Event arrived for an order already in a terminal state."""

    def __init__(self, order_id: str, payment_status: str, order_status: str):
        self.order_id = order_id
        self.payment_status = payment_status
        self.order_status = order_status
        super().__init__(
            f"Order {order_id} is {order_status}/{payment_status}; event is stale"
        )


class RefundNotAllowed(SettlementError):
    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Cannot refund order {order_id}: {reason}")


class CancellationNotAllowed(SettlementError):
    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Cannot cancel order {order_id}: {reason}")


class ConcurrentModification(SettlementError):
    """Conditional write kept losing to other writers."""

    retryable = True

    def __init__(self, entity: str, entity_id: str, attempts: int):
        self.entity = entity
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(f"{entity} {entity_id} changed {attempts} times during update")


class ActiveCartExists(SettlementError):
    """An owner (user, hotel, branch) may hold a single active cart."""

    def __init__(self, cart_id: str, user_id: str, hotel_id: str, branch_id: Optional[str]):
        self.cart_id = cart_id
        self.user_id = user_id
        self.hotel_id = hotel_id
        self.branch_id = branch_id
        super().__init__(
            f"Cart {cart_id} cannot become active: {user_id} already has one at {hotel_id}/{branch_id or '-'}"
        )


# =============================================================================
# LEDGER
# =============================================================================

class LedgerError(SettlementError):
    pass


class InsufficientBalance(LedgerError):
    """Appending a debit would make the running balance negative."""

    def __init__(self, user_id: str, balance: int, amount: int, report=None):
        self.user_id = user_id
        self.balance = balance
        self.amount = amount
        # Partial result of the apply() call that raised, when there is one
        self.report = report
        super().__init__(
            f"Insufficient coin balance for user {user_id}: balance={balance}, amount={amount}"
        )


class DuplicateLedgerEntry(LedgerError):
    """An applied entry for the same (order, type) or original entry exists."""

    def __init__(self, key: str, existing=None):
        self.key = key
        self.existing = existing
        super().__init__(f"Ledger entry already applied: {key}")


class UserNotFound(LedgerError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class EntryNotReversible(LedgerError):
    def __init__(self, entry_id: str, status: str):
        self.entry_id = entry_id
        self.status = status
        super().__init__(f"Only completed entries can be reversed ({entry_id} is {status})")


# =============================================================================
# GATEWAY
# =============================================================================

class GatewayError(SettlementError):
    """Gateway answered with an error."""

    def __init__(self, provider: str, detail: str, code: Optional[str] = None):
        self.provider = provider
        self.detail = detail
        self.code = code
        super().__init__(f"{provider} gateway error: {detail}")


class GatewayTimeout(GatewayError):
    """Gateway did not answer in time. The order must stay untouched."""

    retryable = True

    def __init__(self, provider: str, operation: str):
        self.operation = operation
        super().__init__(provider, f"{operation} timed out", code="timeout")
