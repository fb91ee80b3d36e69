"""
Coin Expiry Sweep
=================
Background task that expires earned coins past their ``expires_at``.

Runs alongside live settlement: every expiry is a compare-and-set on the
original entry plus an append, so sweeps never double-expire an entry and
never race a balance below zero.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from tabletop.config import JobConfig, job_config
from tabletop.pipeline.event_bus import EventType, NotificationBus
from tabletop.pipeline.ledger import CoinLedger, ExpiryReport

logger = structlog.get_logger().bind(component="coin_expiry")


async def run_expiry_sweep(
    ledger: CoinLedger,
    notifications: Optional[NotificationBus] = None,
    now: Optional[datetime] = None,
    batch_size: int = job_config.EXPIRY_BATCH_SIZE,
) -> ExpiryReport:
    """One pass over entries due for expiry."""
    report = await ledger.expire_due(now=now, limit=batch_size)

    if report.entries_expired:
        logger.info(
            "expiry_sweep_complete",
            entries_expired=report.entries_expired,
            coins_expired=report.coins_expired,
            users=len(report.users),
            skipped=report.skipped,
        )
        if notifications is not None:
            await notifications.emit(EventType.COINS_EXPIRED, report.model_dump())
    return report


async def coin_expiry_loop(
    ledger: CoinLedger,
    notifications: Optional[NotificationBus] = None,
    config: JobConfig = job_config,
):
    """Sweep every ``EXPIRY_INTERVAL`` seconds until cancelled."""
    logger.info(
        "expiry_loop_started",
        interval=config.EXPIRY_INTERVAL,
        batch_size=config.EXPIRY_BATCH_SIZE,
        enabled=config.EXPIRY_ENABLED,
    )

    if not config.EXPIRY_ENABLED:
        logger.info("expiry_loop_disabled")
        return

    while True:
        try:
            report = await run_expiry_sweep(ledger, notifications, batch_size=config.EXPIRY_BATCH_SIZE)
            # A full batch means more are waiting; go again without sleeping
            if report.entries_expired + report.skipped >= config.EXPIRY_BATCH_SIZE:
                continue
        except Exception as e:
            logger.error("expiry_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(config.EXPIRY_INTERVAL)
