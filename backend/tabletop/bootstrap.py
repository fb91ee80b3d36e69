"""
Composition root.

Builds the pipeline once at process start and hands collaborators down
explicitly; nothing in the pipeline looks services up through module
globals.
"""

from dataclasses import dataclass, field
from typing import Optional

import structlog

from tabletop.config import settings
from tabletop.gateways import GatewayRegistry, default_credentials
from tabletop.pipeline.event_bus import IEventBus, NotificationBus, create_event_bus
from tabletop.pipeline.ledger import CoinLedger
from tabletop.pipeline.normalizer import GatewayEventNormalizer
from tabletop.pipeline.orchestrator import SettlementOrchestrator
from tabletop.pipeline.poller import StatusPoller
from tabletop.pipeline.side_effects import FulfillmentSideEffects
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import CoinSettings
from tabletop.services import (
    IAssignmentService,
    IInvoiceService,
    InvoiceService,
    RosterAssignmentService,
)
from tabletop.storage import (
    ICartRepository,
    IInvoiceJobQueue,
    ILedgerRepository,
    InMemoryCartRepository,
    InMemoryInvoiceJobQueue,
    InMemoryLedgerRepository,
    InMemoryOrderRepository,
    InMemoryTransactionRepository,
    InMemoryUserRepository,
    IOrderRepository,
    ITransactionRepository,
    IUserRepository,
)

logger = structlog.get_logger().bind(component="bootstrap")


@dataclass
class Repositories:
    orders: IOrderRepository
    users: IUserRepository
    ledger: ILedgerRepository
    carts: ICartRepository
    transactions: ITransactionRepository
    invoice_jobs: IInvoiceJobQueue
    database: Optional[object] = None


def memory_repositories() -> Repositories:
    users = InMemoryUserRepository()
    return Repositories(
        orders=InMemoryOrderRepository(),
        users=users,
        ledger=InMemoryLedgerRepository(users),
        carts=InMemoryCartRepository(),
        transactions=InMemoryTransactionRepository(),
        invoice_jobs=InMemoryInvoiceJobQueue(),
    )


async def postgres_repositories() -> Repositories:
    from tabletop.storage.postgres import (
        Database,
        PostgresCartRepository,
        PostgresInvoiceJobQueue,
        PostgresLedgerRepository,
        PostgresOrderRepository,
        PostgresTransactionRepository,
        PostgresUserRepository,
    )

    db = Database()
    await db.initialize()
    return Repositories(
        orders=PostgresOrderRepository(db),
        users=PostgresUserRepository(db),
        ledger=PostgresLedgerRepository(db),
        carts=PostgresCartRepository(db),
        transactions=PostgresTransactionRepository(db),
        invoice_jobs=PostgresInvoiceJobQueue(db),
        database=db,
    )


@dataclass
class Container:
    repositories: Repositories
    registry: GatewayRegistry
    bus: IEventBus
    notifications: NotificationBus
    state_machine: OrderStateMachine
    ledger: CoinLedger
    side_effects: FulfillmentSideEffects
    orchestrator: SettlementOrchestrator
    normalizer: GatewayEventNormalizer
    poller: StatusPoller
    assignment: IAssignmentService
    invoices: IInvoiceService
    background_tasks: list = field(default_factory=list)

    async def close(self):
        for task in self.background_tasks:
            task.cancel()
        await self.registry.close()
        await self.bus.disconnect()
        if self.repositories.database is not None:
            await self.repositories.database.close()
        logger.info("container_closed")


def build_container(
    repositories: Repositories,
    registry: Optional[GatewayRegistry] = None,
    bus: Optional[IEventBus] = None,
    assignment: Optional[IAssignmentService] = None,
    invoices: Optional[IInvoiceService] = None,
    coin_settings: Optional[CoinSettings] = None,
) -> Container:
    """Wire the pipeline. The bus still has to be connected by the caller."""
    registry = registry or GatewayRegistry()
    bus = bus or create_event_bus(use_rabbitmq=settings.EVENT_BUS_BACKEND == "rabbitmq")
    assignment = assignment or RosterAssignmentService()
    invoices = invoices or InvoiceService()
    notifications = NotificationBus(bus)

    state_machine = OrderStateMachine(repositories.orders)
    ledger = CoinLedger(repositories.ledger, repositories.users, coin_settings)
    side_effects = FulfillmentSideEffects(
        state_machine=state_machine,
        carts=repositories.carts,
        users=repositories.users,
        transactions=repositories.transactions,
        invoice_jobs=repositories.invoice_jobs,
        assignment=assignment,
        invoices=invoices,
        notifications=notifications,
    )
    orchestrator = SettlementOrchestrator(
        orders=repositories.orders,
        state_machine=state_machine,
        ledger=ledger,
        side_effects=side_effects,
        registry=registry,
    )
    return Container(
        repositories=repositories,
        registry=registry,
        bus=bus,
        notifications=notifications,
        state_machine=state_machine,
        ledger=ledger,
        side_effects=side_effects,
        orchestrator=orchestrator,
        normalizer=GatewayEventNormalizer(registry),
        poller=StatusPoller(repositories.orders, orchestrator, state_machine, side_effects),
        assignment=assignment,
        invoices=invoices,
    )


async def create_container(storage_backend: Optional[str] = None) -> Container:
    """Container for the configured backends, with platform gateway credentials."""
    storage_backend = storage_backend or settings.STORAGE_BACKEND
    if storage_backend == "postgres":
        repositories = await postgres_repositories()
    else:
        repositories = memory_repositories()

    registry = GatewayRegistry()
    for credentials in default_credentials():
        registry.register(credentials)

    container = build_container(repositories, registry=registry)
    await container.bus.connect()
    logger.info(
        "container_ready",
        storage_backend=storage_backend,
        event_bus=settings.EVENT_BUS_BACKEND,
        providers=registry.providers,
    )
    return container
