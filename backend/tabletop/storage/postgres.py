"""
PostgreSQL Repositories
=======================
asyncpg-backed implementations of the storage interfaces.

Each entity is stored as a JSONB document next to the columns it is looked
up or conditionally updated by. Conditional writes are single ``UPDATE ...
WHERE`` statements; ledger appends take a row lock on the user for the
duration of one short transaction.

pip install asyncpg
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import asyncpg
import structlog

from tabletop.config import db_config
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

logger = structlog.get_logger().bind(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(
        self,
        dsn: str = db_config.DATABASE_URL,
        min_size: int = db_config.MIN_POOL_SIZE,
        max_size: int = db_config.MAX_POOL_SIZE,
    ):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize the connection pool"""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
            )
            logger.info("database_pool_initialized")
            await self._run_migrations()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> list[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def health_check(self) -> bool:
        try:
            return await self.fetch_one("SELECT 1 AS ok") is not None
        except Exception as e:
            logger.warning("database_health_check_failed", error=str(e))
            return False

    async def _run_migrations(self):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                transaction_id VARCHAR(64) UNIQUE NOT NULL,
                gateway_order_id VARCHAR(255),
                payment_status VARCHAR(20) NOT NULL,
                version INTEGER NOT NULL,
                doc JSONB NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_orders_gateway_order ON orders(gateway_order_id)",
            "CREATE INDEX IF NOT EXISTS idx_orders_payment_status ON orders(payment_status)",

            """
            CREATE TABLE IF NOT EXISTS users (
                user_id VARCHAR(64) PRIMARY KEY,
                coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
                doc JSONB NOT NULL
            )
            """,

            # Append-only; only status ever changes
            """
            CREATE TABLE IF NOT EXISTS coin_ledger (
                entry_id VARCHAR(64) PRIMARY KEY,
                user_id VARCHAR(64) NOT NULL REFERENCES users(user_id),
                order_id VARCHAR(64),
                type VARCHAR(20) NOT NULL,
                status VARCHAR(20) NOT NULL,
                amount INTEGER NOT NULL,
                balance_after INTEGER NOT NULL CHECK (balance_after >= 0),
                dedupe_key VARCHAR(255) UNIQUE,
                expires_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                seq BIGSERIAL,
                doc JSONB NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_ledger_user ON coin_ledger(user_id, seq DESC)",
            "CREATE INDEX IF NOT EXISTS idx_ledger_order ON coin_ledger(order_id)",
            """
            CREATE INDEX IF NOT EXISTS idx_ledger_expiry ON coin_ledger(expires_at)
            WHERE type = 'earned' AND status = 'completed'
            """,

            """
            CREATE TABLE IF NOT EXISTS carts (
                cart_id VARCHAR(64) PRIMARY KEY,
                user_id VARCHAR(64) NOT NULL,
                hotel_id VARCHAR(64) NOT NULL,
                branch_id VARCHAR(64),
                status VARCHAR(20) NOT NULL,
                checkout_order_id VARCHAR(64),
                doc JSONB NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_carts_checkout_order ON carts(checkout_order_id)",
            "CREATE INDEX IF NOT EXISTS idx_carts_owner ON carts(user_id, hotel_id, branch_id, status)",
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_carts_one_active
            ON carts(user_id, hotel_id, COALESCE(branch_id, '')) WHERE status = 'active'
            """,

            """
            CREATE TABLE IF NOT EXISTS transactions (
                order_id VARCHAR(64) PRIMARY KEY,
                status VARCHAR(20) NOT NULL,
                doc JSONB NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            """
            CREATE TABLE IF NOT EXISTS invoice_jobs (
                job_id VARCHAR(64) PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL,
                status VARCHAR(20) NOT NULL,
                scheduled_for TIMESTAMPTZ NOT NULL,
                doc JSONB NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_invoice_jobs_due ON invoice_jobs(status, scheduled_for)",
        ]

        async with self.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except Exception as e:
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# ORDERS
# =============================================================================

class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self._db = db

    async def _fetch(self, where: str, value: str) -> Optional[Order]:
        row = await self._db.fetch_one(f"SELECT doc FROM orders WHERE {where} = $1", value)
        return Order.model_validate_json(row["doc"]) if row else None

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._fetch("order_id", order_id)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        return await self._fetch("transaction_id", transaction_id)

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return await self._fetch("gateway_order_id", gateway_order_id)

    async def save(self, order: Order) -> Order:
        await self._db.execute(
            """
            INSERT INTO orders (order_id, transaction_id, gateway_order_id, payment_status, version, doc)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            ON CONFLICT (order_id) DO UPDATE SET
                transaction_id = EXCLUDED.transaction_id,
                gateway_order_id = EXCLUDED.gateway_order_id,
                payment_status = EXCLUDED.payment_status,
                version = EXCLUDED.version,
                doc = EXCLUDED.doc,
                updated_at = NOW()
            """,
            order.order_id,
            order.payment.transaction_id,
            order.payment.gateway_order_id,
            order.payment.payment_status.value,
            order.version,
            order.model_dump_json(),
        )
        return order

    async def compare_and_set(self, current: Order, updated: Order) -> bool:
        result = await self._db.execute(
            """
            UPDATE orders SET
                gateway_order_id = $3,
                payment_status = $4,
                version = $5,
                doc = $6::jsonb,
                updated_at = NOW()
            WHERE order_id = $1 AND version = $2
            """,
            current.order_id,
            current.version,
            updated.payment.gateway_order_id,
            updated.payment.payment_status.value,
            updated.version,
            updated.model_dump_json(),
        )
        return result == "UPDATE 1"


# =============================================================================
# USERS & LEDGER
# =============================================================================

class PostgresUserRepository(IUserRepository):

    def __init__(self, db: Database):
        self._db = db

    async def get(self, user_id: str) -> Optional[User]:
        row = await self._db.fetch_one("SELECT coins, doc FROM users WHERE user_id = $1", user_id)
        if not row:
            return None
        return User.model_validate_json(row["doc"]).model_copy(update={"coins": row["coins"]})

    async def save(self, user: User) -> User:
        # Existing rows keep their ledger-maintained balance
        row = await self._db.fetch_one(
            """
            INSERT INTO users (user_id, coins, doc) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (user_id) DO UPDATE SET doc = EXCLUDED.doc
            RETURNING coins
            """,
            user.user_id,
            user.coins,
            user.model_dump_json(exclude={"coins"}),
        )
        return user.model_copy(update={"coins": row["coins"]})


class PostgresLedgerRepository(ILedgerRepository):

    def __init__(self, db: Database):
        self._db = db

    async def append(self, draft: LedgerEntryDraft) -> CoinLedgerEntry:
        key = draft.dedupe_key()
        async with self._db.acquire() as conn:
            async with conn.transaction():
                user_row = await conn.fetchrow(
                    "SELECT coins FROM users WHERE user_id = $1 FOR UPDATE", draft.user_id
                )
                if user_row is None:
                    raise UserNotFound(draft.user_id)

                if key:
                    existing = await conn.fetchrow(
                        "SELECT doc FROM coin_ledger WHERE dedupe_key = $1", key
                    )
                    if existing:
                        raise DuplicateLedgerEntry(
                            key, CoinLedgerEntry.model_validate_json(existing["doc"])
                        )

                balance = user_row["coins"]
                if balance + draft.amount_against(balance) < 0:
                    raise InsufficientBalance(draft.user_id, balance, draft.amount)
                entry = draft.to_entry(balance_before=balance)

                await conn.execute(
                    """
                    INSERT INTO coin_ledger
                    (entry_id, user_id, order_id, type, status, amount, balance_after,
                     dedupe_key, expires_at, created_at, doc)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
                    """,
                    entry.entry_id,
                    entry.user_id,
                    entry.order_id,
                    entry.type.value,
                    entry.status.value,
                    entry.amount,
                    entry.balance_after,
                    key,
                    entry.expires_at,
                    entry.created_at,
                    entry.model_dump_json(),
                )
                await conn.execute(
                    "UPDATE users SET coins = $2 WHERE user_id = $1",
                    draft.user_id,
                    entry.balance_after,
                )
        return entry

    @staticmethod
    def _to_entry(row: asyncpg.Record) -> CoinLedgerEntry:
        entry = CoinLedgerEntry.model_validate_json(row["doc"])
        return entry.model_copy(update={"status": LedgerEntryStatus(row["status"])})

    async def get(self, entry_id: str) -> Optional[CoinLedgerEntry]:
        row = await self._db.fetch_one(
            "SELECT status, doc FROM coin_ledger WHERE entry_id = $1", entry_id
        )
        return self._to_entry(row) if row else None

    async def list_for_user(
        self,
        user_id: str,
        entry_type: Optional[LedgerEntryType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[CoinLedgerEntry]:
        conditions = ["user_id = $1"]
        params: list = [user_id]

        if entry_type is not None:
            params.append(entry_type.value)
            conditions.append(f"type = ${len(params)}")

        params.append(offset)
        query = f"""
            SELECT status, doc FROM coin_ledger
            WHERE {' AND '.join(conditions)}
            ORDER BY seq DESC
            OFFSET ${len(params)}
        """
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        rows = await self._db.fetch_all(query, *params)
        return [self._to_entry(row) for row in rows]

    async def list_for_order(self, order_id: str) -> list[CoinLedgerEntry]:
        rows = await self._db.fetch_all(
            "SELECT status, doc FROM coin_ledger WHERE order_id = $1 ORDER BY seq", order_id
        )
        return [self._to_entry(row) for row in rows]

    async def list_due_for_expiry(self, now: datetime, limit: int = 500) -> list[CoinLedgerEntry]:
        rows = await self._db.fetch_all(
            """
            SELECT status, doc FROM coin_ledger
            WHERE type = 'earned' AND status = 'completed' AND expires_at < $1
            ORDER BY expires_at
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._to_entry(row) for row in rows]

    async def set_status(
        self,
        entry_id: str,
        expected: LedgerEntryStatus,
        status: LedgerEntryStatus,
    ) -> bool:
        result = await self._db.execute(
            """
            UPDATE coin_ledger
            SET status = $3, doc = jsonb_set(doc, '{status}', to_jsonb($3::text))
            WHERE entry_id = $1 AND status = $2
            """,
            entry_id,
            expected.value,
            status.value,
        )
        return result == "UPDATE 1"


# =============================================================================
# CARTS, TRANSACTIONS, INVOICE QUEUE
# =============================================================================

class PostgresCartRepository(ICartRepository):

    def __init__(self, db: Database):
        self._db = db

    async def _write(self, cart: Cart, query: str, *args) -> str:
        try:
            return await self._db.execute(query, *args)
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == "idx_carts_one_active":
                raise ActiveCartExists(cart.cart_id, cart.user_id, cart.hotel_id, cart.branch_id) from e
            raise

    async def get(self, cart_id: str) -> Optional[Cart]:
        row = await self._db.fetch_one("SELECT doc FROM carts WHERE cart_id = $1", cart_id)
        return Cart.model_validate_json(row["doc"]) if row else None

    async def save(self, cart: Cart) -> Cart:
        await self._write(
            cart,
            """
            INSERT INTO carts (cart_id, user_id, hotel_id, branch_id, status, checkout_order_id, doc)
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
            ON CONFLICT (cart_id) DO UPDATE SET
                status = EXCLUDED.status,
                checkout_order_id = EXCLUDED.checkout_order_id,
                doc = EXCLUDED.doc
            """,
            cart.cart_id,
            cart.user_id,
            cart.hotel_id,
            cart.branch_id,
            cart.status.value,
            cart.checkout_order_id,
            cart.model_dump_json(),
        )
        return cart

    async def find_checkout_cart(self, order_id: str) -> Optional[Cart]:
        row = await self._db.fetch_one(
            "SELECT doc FROM carts WHERE checkout_order_id = $1", order_id
        )
        return Cart.model_validate_json(row["doc"]) if row else None

    async def find_active(
        self, user_id: str, hotel_id: str, branch_id: Optional[str]
    ) -> Optional[Cart]:
        row = await self._db.fetch_one(
            """
            SELECT doc FROM carts
            WHERE user_id = $1 AND hotel_id = $2 AND branch_id IS NOT DISTINCT FROM $3
              AND status = 'active'
            LIMIT 1
            """,
            user_id,
            hotel_id,
            branch_id,
        )
        return Cart.model_validate_json(row["doc"]) if row else None

    async def transition(self, expected: CartStatus, updated: Cart) -> bool:
        updated = updated.model_copy(update={"updated_at": utcnow()})
        result = await self._write(
            updated,
            """
            UPDATE carts SET status = $3, checkout_order_id = $4, doc = $5::jsonb
            WHERE cart_id = $1 AND status = $2
            """,
            updated.cart_id,
            expected.value,
            updated.status.value,
            updated.checkout_order_id,
            updated.model_dump_json(),
        )
        return result == "UPDATE 1"


class PostgresTransactionRepository(ITransactionRepository):

    def __init__(self, db: Database):
        self._db = db

    async def upsert(self, record: TransactionRecord) -> TransactionRecord:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT doc FROM transactions WHERE order_id = $1 FOR UPDATE", record.order_id
                )
                if row:
                    existing = TransactionRecord.model_validate_json(row["doc"])
                    record = record.model_copy(update={
                        "record_id": existing.record_id,
                        "created_at": existing.created_at,
                        "updated_at": utcnow(),
                    })
                await conn.execute(
                    """
                    INSERT INTO transactions (order_id, status, doc) VALUES ($1, $2, $3::jsonb)
                    ON CONFLICT (order_id) DO UPDATE SET
                        status = EXCLUDED.status, doc = EXCLUDED.doc, updated_at = NOW()
                    """,
                    record.order_id,
                    record.status.value,
                    record.model_dump_json(),
                )
        return record

    async def get_by_order(self, order_id: str) -> Optional[TransactionRecord]:
        row = await self._db.fetch_one("SELECT doc FROM transactions WHERE order_id = $1", order_id)
        return TransactionRecord.model_validate_json(row["doc"]) if row else None


class PostgresInvoiceJobQueue(IInvoiceJobQueue):

    def __init__(self, db: Database):
        self._db = db

    async def enqueue(self, job: InvoiceJob) -> InvoiceJob:
        return await self.save(job)

    async def get(self, job_id: str) -> Optional[InvoiceJob]:
        row = await self._db.fetch_one("SELECT doc FROM invoice_jobs WHERE job_id = $1", job_id)
        return InvoiceJob.model_validate_json(row["doc"]) if row else None

    async def get_due(self, now: datetime, limit: int = 10) -> list[InvoiceJob]:
        rows = await self._db.fetch_all(
            """
            SELECT doc FROM invoice_jobs
            WHERE status = 'pending' AND scheduled_for <= $1
            ORDER BY scheduled_for
            LIMIT $2
            """,
            now,
            limit,
        )
        return [InvoiceJob.model_validate_json(row["doc"]) for row in rows]

    async def claim(self, job_id: str) -> Optional[InvoiceJob]:
        row = await self._db.fetch_one(
            """
            UPDATE invoice_jobs SET
                status = 'processing',
                doc = doc || jsonb_build_object(
                    'status', 'processing',
                    'attempts', COALESCE((doc->>'attempts')::int, 0) + 1,
                    'last_attempt_at', $2::text
                )
            WHERE job_id = $1 AND status = 'pending'
            RETURNING doc
            """,
            job_id,
            utcnow().isoformat(),
        )
        return InvoiceJob.model_validate_json(row["doc"]) if row else None

    async def save(self, job: InvoiceJob) -> InvoiceJob:
        await self._db.execute(
            """
            INSERT INTO invoice_jobs (job_id, order_id, status, scheduled_for, doc)
            VALUES ($1, $2, $3, $4, $5::jsonb)
            ON CONFLICT (job_id) DO UPDATE SET
                status = EXCLUDED.status,
                scheduled_for = EXCLUDED.scheduled_for,
                doc = EXCLUDED.doc
            """,
            job.job_id,
            job.order_id,
            job.status.value,
            job.scheduled_for,
            job.model_dump_json(),
        )
        return job

    async def get_stats(self) -> dict:
        rows = await self._db.fetch_all(
            "SELECT status, COUNT(*) AS n FROM invoice_jobs GROUP BY status"
        )
        stats = {status.value: 0 for status in InvoiceJobStatus}
        for row in rows:
            stats[row["status"]] = row["n"]
        stats["total"] = sum(row["n"] for row in rows)
        return stats
