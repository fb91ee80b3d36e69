"""
In-memory repositories.

Default backend for development and tests. Each repository guards its dicts
with one ``asyncio.Lock``; no lock is held across anything but dictionary
updates.
"""

import asyncio
from datetime import datetime
from typing import Optional

from tabletop.errors import ActiveCartExists, DuplicateLedgerEntry, InsufficientBalance, UserNotFound
from tabletop.schemas import (
    Cart,
    CartStatus,
    CoinLedgerEntry,
    InvoiceJob,
    InvoiceJobStatus,
    LedgerEntryDraft,
    LedgerEntryStatus,
    LedgerEntryType,
    Order,
    TransactionRecord,
    User,
)
from tabletop.schemas.domain import utcnow
from tabletop.storage.interfaces import (
    ICartRepository,
    IInvoiceJobQueue,
    ILedgerRepository,
    IOrderRepository,
    ITransactionRepository,
    IUserRepository,
)


class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment.transaction_id == transaction_id:
                    return order
            return None

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment.gateway_order_id == gateway_order_id:
                    return order
            return None

    async def save(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.order_id] = order
            return order

    async def compare_and_set(self, current: Order, updated: Order) -> bool:
        async with self._lock:
            stored = self._orders.get(current.order_id)
            if stored is None or stored.version != current.version:
                return False
            self._orders[updated.order_id] = updated
            return True


class InMemoryUserRepository(IUserRepository):

    def __init__(self):
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[User]:
        async with self._lock:
            return self._users.get(user_id)

    async def save(self, user: User) -> User:
        async with self._lock:
            existing = self._users.get(user.user_id)
            if existing is not None:
                # Balance belongs to the ledger
                user = user.model_copy(update={"coins": existing.coins})
            self._users[user.user_id] = user
            return user

    def peek(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def set_cached_balance(self, user_id: str, coins: int) -> None:
        self._users[user_id] = self._users[user_id].model_copy(update={"coins": coins})


class InMemoryLedgerRepository(ILedgerRepository):
    """Append-only ledger; shares the user store to keep the cached balance."""

    def __init__(self, users: InMemoryUserRepository):
        self._users = users
        self._entries: dict[str, CoinLedgerEntry] = {}
        self._by_key: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def append(self, draft: LedgerEntryDraft) -> CoinLedgerEntry:
        async with self._lock:
            key = draft.dedupe_key()
            if key and key in self._by_key:
                raise DuplicateLedgerEntry(key, self._entries[self._by_key[key]])

            user = self._users.peek(draft.user_id)
            if user is None:
                raise UserNotFound(draft.user_id)

            if user.coins + draft.amount_against(user.coins) < 0:
                raise InsufficientBalance(draft.user_id, user.coins, draft.amount)
            entry = draft.to_entry(balance_before=user.coins)

            self._entries[entry.entry_id] = entry
            if key:
                self._by_key[key] = entry.entry_id
            self._users.set_cached_balance(draft.user_id, entry.balance_after)
            return entry

    async def get(self, entry_id: str) -> Optional[CoinLedgerEntry]:
        async with self._lock:
            return self._entries.get(entry_id)

    async def list_for_user(
        self,
        user_id: str,
        entry_type: Optional[LedgerEntryType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[CoinLedgerEntry]:
        async with self._lock:
            entries = [
                e for e in self._entries.values()
                if e.user_id == user_id and (entry_type is None or e.type == entry_type)
            ]
        # Dict order is append order
        entries.reverse()
        end = None if limit is None else offset + limit
        return entries[offset:end]

    async def list_for_order(self, order_id: str) -> list[CoinLedgerEntry]:
        async with self._lock:
            return [e for e in self._entries.values() if e.order_id == order_id]

    async def list_due_for_expiry(self, now: datetime, limit: int = 500) -> list[CoinLedgerEntry]:
        async with self._lock:
            due = [
                e for e in self._entries.values()
                if e.type == LedgerEntryType.EARNED
                and e.status == LedgerEntryStatus.COMPLETED
                and e.expires_at is not None
                and e.expires_at < now
            ]
        due.sort(key=lambda e: e.expires_at)
        return due[:limit]

    async def set_status(
        self,
        entry_id: str,
        expected: LedgerEntryStatus,
        status: LedgerEntryStatus,
    ) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != expected:
                return False
            self._entries[entry_id] = entry.model_copy(update={"status": status})
            return True


class InMemoryCartRepository(ICartRepository):

    def __init__(self):
        self._carts: dict[str, Cart] = {}
        self._lock = asyncio.Lock()

    def _check_single_active(self, cart: Cart):
        if cart.status != CartStatus.ACTIVE:
            return
        for other in self._carts.values():
            if (
                other.cart_id != cart.cart_id
                and other.status == CartStatus.ACTIVE
                and other.owner_key == cart.owner_key
            ):
                raise ActiveCartExists(cart.cart_id, cart.user_id, cart.hotel_id, cart.branch_id)

    async def get(self, cart_id: str) -> Optional[Cart]:
        async with self._lock:
            return self._carts.get(cart_id)

    async def save(self, cart: Cart) -> Cart:
        async with self._lock:
            self._check_single_active(cart)
            self._carts[cart.cart_id] = cart
            return cart

    async def find_checkout_cart(self, order_id: str) -> Optional[Cart]:
        async with self._lock:
            for cart in self._carts.values():
                if cart.checkout_order_id == order_id:
                    return cart
            return None

    async def find_active(
        self, user_id: str, hotel_id: str, branch_id: Optional[str]
    ) -> Optional[Cart]:
        async with self._lock:
            for cart in self._carts.values():
                if cart.status == CartStatus.ACTIVE and cart.owner_key == (user_id, hotel_id, branch_id):
                    return cart
            return None

    async def transition(self, expected: CartStatus, updated: Cart) -> bool:
        async with self._lock:
            stored = self._carts.get(updated.cart_id)
            if stored is None or stored.status != expected:
                return False
            self._check_single_active(updated)
            self._carts[updated.cart_id] = updated.model_copy(update={"updated_at": utcnow()})
            return True


class InMemoryTransactionRepository(ITransactionRepository):

    def __init__(self):
        self._records: dict[str, TransactionRecord] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: TransactionRecord) -> TransactionRecord:
        async with self._lock:
            existing = self._records.get(record.order_id)
            if existing is not None:
                record = record.model_copy(update={
                    "record_id": existing.record_id,
                    "created_at": existing.created_at,
                    "updated_at": utcnow(),
                })
            self._records[record.order_id] = record
            return record

    async def get_by_order(self, order_id: str) -> Optional[TransactionRecord]:
        async with self._lock:
            return self._records.get(order_id)


class InMemoryInvoiceJobQueue(IInvoiceJobQueue):
    """Invoice retry queue"""

    def __init__(self):
        self._jobs: dict[str, InvoiceJob] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, job: InvoiceJob) -> InvoiceJob:
        async with self._lock:
            self._jobs[job.job_id] = job
            return job

    async def get(self, job_id: str) -> Optional[InvoiceJob]:
        async with self._lock:
            return self._jobs.get(job_id)

    async def get_due(self, now: datetime, limit: int = 10) -> list[InvoiceJob]:
        async with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == InvoiceJobStatus.PENDING and j.scheduled_for <= now
            ]
        due.sort(key=lambda j: j.scheduled_for)
        return due[:limit]

    async def claim(self, job_id: str) -> Optional[InvoiceJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != InvoiceJobStatus.PENDING:
                return None
            claimed = job.model_copy(update={
                "status": InvoiceJobStatus.PROCESSING,
                "attempts": job.attempts + 1,
                "last_attempt_at": utcnow(),
            })
            self._jobs[job_id] = claimed
            return claimed

    async def save(self, job: InvoiceJob) -> InvoiceJob:
        async with self._lock:
            self._jobs[job.job_id] = job
            return job

    async def get_stats(self) -> dict:
        async with self._lock:
            stats = {status.value: 0 for status in InvoiceJobStatus}
            for job in self._jobs.values():
                stats[job.status.value] += 1
            stats["total"] = len(self._jobs)
            return stats
