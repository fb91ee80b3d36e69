"""
Persistence interfaces.

Every write that races with another writer is a compare-and-set: the caller
passes the snapshot it read and the write only lands if the stored row is
still that snapshot. Callers re-read and retry on ``False``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from tabletop.schemas import (
    Cart,
    CartStatus,
    CoinLedgerEntry,
    InvoiceJob,
    LedgerEntryDraft,
    LedgerEntryStatus,
    LedgerEntryType,
    Order,
    TransactionRecord,
    User,
)


class IOrderRepository(ABC):
    """Order-specific repository interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Insert or overwrite unconditionally (checkout, fixtures)."""
        pass

    @abstractmethod
    async def compare_and_set(self, current: Order, updated: Order) -> bool:
        """Store ``updated`` only if the stored version is ``current.version``."""
        pass


class IUserRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def save(self, user: User) -> User:
        pass


class ILedgerRepository(ABC):
    """Append-only coin ledger with an atomically maintained cached balance."""

    @abstractmethod
    async def append(self, draft: LedgerEntryDraft) -> CoinLedgerEntry:
        """
        Append one entry and update the user's cached balance atomically.

        Raises:
            DuplicateLedgerEntry: an applied entry with the same dedupe key exists
            InsufficientBalance: the debit would take the balance below zero
            UserNotFound: no such user
        """
        pass

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[CoinLedgerEntry]:
        pass

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        entry_type: Optional[LedgerEntryType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[CoinLedgerEntry]:
        """Newest first."""
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> list[CoinLedgerEntry]:
        pass

    @abstractmethod
    async def list_due_for_expiry(self, now: datetime, limit: int = 500) -> list[CoinLedgerEntry]:
        """Completed earned entries whose ``expires_at`` is before ``now``."""
        pass

    @abstractmethod
    async def set_status(
        self,
        entry_id: str,
        expected: LedgerEntryStatus,
        status: LedgerEntryStatus,
    ) -> bool:
        pass


class ICartRepository(ABC):

    @abstractmethod
    async def get(self, cart_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def save(self, cart: Cart) -> Cart:
        """Raises ActiveCartExists when an active cart would get a twin."""
        pass

    @abstractmethod
    async def find_checkout_cart(self, order_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def find_active(
        self, user_id: str, hotel_id: str, branch_id: Optional[str]
    ) -> Optional[Cart]:
        pass

    @abstractmethod
    async def transition(self, expected: CartStatus, updated: Cart) -> bool:
        """
        Store ``updated`` only if the stored cart is still ``expected``.

        Raises ActiveCartExists when ``updated`` is active and its owner
        already holds another active cart.
        """
        pass


class ITransactionRepository(ABC):

    @abstractmethod
    async def upsert(self, record: TransactionRecord) -> TransactionRecord:
        """One record per order; an existing record keeps its id and created_at."""
        pass

    @abstractmethod
    async def get_by_order(self, order_id: str) -> Optional[TransactionRecord]:
        pass


class IInvoiceJobQueue(ABC):
    """Deferred invoice email queue"""

    @abstractmethod
    async def enqueue(self, job: InvoiceJob) -> InvoiceJob:
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[InvoiceJob]:
        pass

    @abstractmethod
    async def get_due(self, now: datetime, limit: int = 10) -> list[InvoiceJob]:
        pass

    @abstractmethod
    async def claim(self, job_id: str) -> Optional[InvoiceJob]:
        """Move a pending job to processing; None if someone else got it."""
        pass

    @abstractmethod
    async def save(self, job: InvoiceJob) -> InvoiceJob:
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass
