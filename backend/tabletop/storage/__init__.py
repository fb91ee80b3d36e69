"""
Storage layer: repository interfaces with in-memory and PostgreSQL backends.
"""

from tabletop.storage.interfaces import (
    ICartRepository,
    IInvoiceJobQueue,
    ILedgerRepository,
    IOrderRepository,
    ITransactionRepository,
    IUserRepository,
)
from tabletop.storage.memory import (
    InMemoryCartRepository,
    InMemoryInvoiceJobQueue,
    InMemoryLedgerRepository,
    InMemoryOrderRepository,
    InMemoryTransactionRepository,
    InMemoryUserRepository,
)

__all__ = [
    "ICartRepository",
    "IInvoiceJobQueue",
    "ILedgerRepository",
    "IOrderRepository",
    "ITransactionRepository",
    "IUserRepository",
    "InMemoryCartRepository",
    "InMemoryInvoiceJobQueue",
    "InMemoryLedgerRepository",
    "InMemoryOrderRepository",
    "InMemoryTransactionRepository",
    "InMemoryUserRepository",
]
