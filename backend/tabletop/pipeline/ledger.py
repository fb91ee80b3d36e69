"""
Coin Ledger
===========
Append-only reward coin ledger.

History is never rewritten: expiry and reversal append an offsetting entry
and flip the original's status. The user's cached balance moves only
together with an append, inside the repository's atomic section.

Balance invariant: cached balance == sum of amounts of applied entries
(completed, expired, reversed).
"""

from datetime import timedelta
from typing import Optional

import structlog
from pydantic import BaseModel

from tabletop.config import settings
from tabletop.errors import (
    DuplicateLedgerEntry,
    EntryNotReversible,
    InsufficientBalance,
    SettlementError,
    UserNotFound,
)
from tabletop.schemas import (
    APPLIED_ENTRY_STATUSES,
    CoinEffect,
    CoinLedgerEntry,
    CoinSettings,
    LedgerEntryDraft,
    LedgerEntryStatus,
    LedgerEntryType,
    LedgerReport,
    Order,
)
from tabletop.schemas.domain import utcnow
from tabletop.schemas.events import CoinSummary, LedgerFailure
from tabletop.storage import ILedgerRepository, IUserRepository


class BalanceCheck(BaseModel):
    user_id: str
    cached_balance: int
    ledger_balance: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance


class ExpiryReport(BaseModel):
    entries_expired: int = 0
    coins_expired: int = 0
    skipped: int = 0
    users: list[str] = []


class CoinLedger:

    def __init__(
        self,
        entries: ILedgerRepository,
        users: IUserRepository,
        coin_settings: Optional[CoinSettings] = None,
    ):
        self.entries = entries
        self.users = users
        self.coin_settings = coin_settings or CoinSettings(coin_expiry_days=settings.COIN_EXPIRY_DAYS)
        self._logger = structlog.get_logger().bind(component="coin_ledger")

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    def effects_for_order(self, order: Order, coin_settings: Optional[CoinSettings] = None) -> list[CoinEffect]:
        """Coin movements a paid order implies: spend first, then reward."""
        coin_settings = coin_settings or self.coin_settings
        effects = []
        if order.coins_used > 0:
            effects.append(CoinEffect(
                type=LedgerEntryType.USED,
                amount=-order.coins_used,
                description=f"Coins used for order {order.order_id}",
            ))
        if order.reward_coins > 0 and coin_settings.is_active:
            effects.append(CoinEffect(
                type=LedgerEntryType.EARNED,
                amount=order.reward_coins,
                expires_in_days=coin_settings.coin_expiry_days or None,
                description=f"Coins earned from order {order.order_id}",
            ))
        return effects

    async def apply(self, order: Order, effects: list[CoinEffect]) -> LedgerReport:
        """
        Apply each effect independently.

        Effects already applied for ``(order, type)`` are skipped. After every
        effect has been attempted, an ``InsufficientBalance`` (if any) is
        re-raised carrying the report; other failures are only reported.
        """
        report = LedgerReport()
        insufficient: Optional[InsufficientBalance] = None
        log = self._logger.bind(order_id=order.order_id, user_id=order.user_id)

        for effect in effects:
            expires_at = None
            if effect.type == LedgerEntryType.EARNED and effect.expires_in_days:
                expires_at = utcnow() + timedelta(days=effect.expires_in_days)

            draft = LedgerEntryDraft(
                user_id=order.user_id,
                type=effect.type,
                amount=effect.amount,
                order_id=order.order_id,
                description=effect.description,
                expires_at=expires_at,
                metadata={"hotel_id": order.hotel_id, "transaction_id": order.payment.transaction_id},
            )
            try:
                entry = await self.entries.append(draft)
            except DuplicateLedgerEntry:
                report.skipped.append(effect.type)
                log.info("ledger_effect_skipped", type=effect.type.value, reason="already_applied")
                continue
            except InsufficientBalance as e:
                insufficient = e
                report.failed.append(LedgerFailure(type=effect.type, amount=effect.amount, error=str(e)))
                log.warning("ledger_insufficient_balance", type=effect.type.value,
                            amount=effect.amount, balance=e.balance)
                continue
            except SettlementError as e:
                report.failed.append(LedgerFailure(type=effect.type, amount=effect.amount, error=str(e)))
                log.error("ledger_effect_failed", type=effect.type.value, error=str(e))
                continue

            report.applied.append(entry)
            log.info("ledger_entry_appended",
                     entry_id=entry.entry_id,
                     type=entry.type.value,
                     amount=entry.amount,
                     balance_after=entry.balance_after)

        if insufficient is not None:
            insufficient.report = report
            raise insufficient
        return report

    # =========================================================================
    # EXPIRY
    # =========================================================================

    async def expire_due(self, now=None, limit: int = 500) -> ExpiryReport:
        """
        Expire earned entries past ``expires_at``.

        The original is flipped first (compare-and-set), so concurrent sweeps
        and reversals never both offset the same entry. The offset is clamped
        to the current balance; a zero balance skips the append.
        """
        now = now or utcnow()
        report = ExpiryReport()
        users: set[str] = set()

        for entry in await self.entries.list_due_for_expiry(now, limit):
            flipped = await self.entries.set_status(
                entry.entry_id, LedgerEntryStatus.COMPLETED, LedgerEntryStatus.EXPIRED
            )
            if not flipped:
                report.skipped += 1
                continue

            user = await self.users.get(entry.user_id)
            if user is None or user.coins == 0:
                report.entries_expired += 1
                self._logger.info("coins_expired_without_offset", entry_id=entry.entry_id, user_id=entry.user_id)
                continue

            draft = LedgerEntryDraft(
                user_id=entry.user_id,
                type=LedgerEntryType.EXPIRED,
                amount=-entry.amount,
                order_id=entry.order_id,
                original_entry_id=entry.entry_id,
                clamp_to_balance=True,
                description=f"Coins expired (earned {entry.created_at.date().isoformat()})",
                metadata={"original_entry_id": entry.entry_id},
            )
            try:
                offset = await self.entries.append(draft)
            except DuplicateLedgerEntry:
                report.skipped += 1
                continue

            report.entries_expired += 1
            report.coins_expired += -offset.amount
            users.add(entry.user_id)
            self._logger.info("coins_expired",
                              entry_id=entry.entry_id,
                              user_id=entry.user_id,
                              amount=offset.amount,
                              balance_after=offset.balance_after)

        report.users = sorted(users)
        return report

    # =========================================================================
    # REVERSAL & ADJUSTMENT
    # =========================================================================

    async def reverse(self, entry_id: str, reason: str, actor: Optional[str] = None) -> CoinLedgerEntry:
        """
        Offset a completed entry: used -> refunded (+), earned -> adjusted (-).

        An earned reversal never takes the balance below zero.
        """
        entry = await self.entries.get(entry_id)
        if entry is None:
            raise EntryNotReversible(entry_id, "missing")
        if entry.status != LedgerEntryStatus.COMPLETED:
            raise EntryNotReversible(entry_id, entry.status.value)

        if not await self.entries.set_status(entry_id, LedgerEntryStatus.COMPLETED, LedgerEntryStatus.REVERSED):
            current = await self.entries.get(entry_id)
            raise EntryNotReversible(entry_id, current.status.value if current else "missing")

        offset_type = LedgerEntryType.REFUNDED if entry.type == LedgerEntryType.USED else LedgerEntryType.ADJUSTED
        draft = LedgerEntryDraft(
            user_id=entry.user_id,
            type=offset_type,
            amount=-entry.amount,
            order_id=entry.order_id,
            original_entry_id=entry.entry_id,
            adjusted_by=actor,
            clamp_to_balance=entry.amount > 0,
            description=f"Reversal: {reason}",
            metadata={"original_entry_id": entry.entry_id, "reason": reason},
        )
        try:
            offset = await self.entries.append(draft)
        except DuplicateLedgerEntry as e:
            return e.existing
        except SettlementError:
            await self.entries.set_status(entry_id, LedgerEntryStatus.REVERSED, LedgerEntryStatus.COMPLETED)
            raise

        self._logger.info("ledger_entry_reversed",
                          entry_id=entry_id,
                          offset_entry_id=offset.entry_id,
                          type=offset.type.value,
                          amount=offset.amount,
                          reason=reason)
        return offset

    async def reverse_order(self, order_id: str, reason: str, actor: Optional[str] = None) -> list[CoinLedgerEntry]:
        """Reverse every completed used/earned entry of an order."""
        offsets = []
        for entry in await self.entries.list_for_order(order_id):
            if entry.status != LedgerEntryStatus.COMPLETED:
                continue
            if entry.type not in (LedgerEntryType.USED, LedgerEntryType.EARNED):
                continue
            try:
                offsets.append(await self.reverse(entry.entry_id, reason, actor))
            except EntryNotReversible as e:
                self._logger.info("reversal_skipped", entry_id=entry.entry_id, status=e.status)
        return offsets

    async def adjust(self, user_id: str, amount: int, reason: str, admin_id: str) -> CoinLedgerEntry:
        """Manual admin bonus or penalty."""
        if amount == 0:
            raise ValueError("Adjustment amount must be non-zero")
        entry = await self.entries.append(LedgerEntryDraft(
            user_id=user_id,
            type=LedgerEntryType.ADJUSTED,
            amount=amount,
            adjusted_by=admin_id,
            description=reason,
            metadata={"reason": reason},
        ))
        self._logger.info("coins_adjusted",
                          user_id=user_id,
                          amount=amount,
                          admin_id=admin_id,
                          balance_after=entry.balance_after)
        return entry

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def history(
        self,
        user_id: str,
        entry_type: Optional[LedgerEntryType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[CoinLedgerEntry]:
        return await self.entries.list_for_user(user_id, entry_type, limit=limit, offset=offset)

    async def summary(self, user_id: str, now=None) -> CoinSummary:
        user = await self.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)

        now = now or utcnow()
        soon = now + timedelta(days=settings.COIN_EXPIRING_SOON_DAYS)
        total_earned = total_used = expiring_soon = 0

        for entry in await self.entries.list_for_user(user_id):
            if entry.status not in APPLIED_ENTRY_STATUSES:
                continue
            if entry.type == LedgerEntryType.EARNED:
                total_earned += entry.amount
                if (
                    entry.status == LedgerEntryStatus.COMPLETED
                    and entry.expires_at is not None
                    and now <= entry.expires_at <= soon
                ):
                    expiring_soon += entry.amount
            elif entry.type == LedgerEntryType.USED:
                total_used += -entry.amount

        return CoinSummary(
            user_id=user_id,
            balance=user.coins,
            total_earned=total_earned,
            total_used=total_used,
            expiring_soon=expiring_soon,
        )

    async def verify_balance(self, user_id: str) -> BalanceCheck:
        user = await self.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)

        entries = await self.entries.list_for_user(user_id)
        check = BalanceCheck(
            user_id=user_id,
            cached_balance=user.coins,
            ledger_balance=sum(e.amount for e in entries if e.status in APPLIED_ENTRY_STATUSES),
        )
        if not check.consistent:
            self._logger.critical("ledger_integrity_alert",
                                  user_id=user_id,
                                  cached_balance=check.cached_balance,
                                  ledger_balance=check.ledger_balance)
        return check
