"""
Invoice Retry Worker
====================
Drains the deferred invoice queue.

A job is claimed (pending -> processing, attempt counted) before any work,
so two workers never send the same invoice. Failures reschedule with
backoff; once attempts are exhausted the job and the order's email status
end up ``failed`` and need a human.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from tabletop.config import JobConfig, job_config, settings
from tabletop.pipeline.state_machine import OrderStateMachine
from tabletop.schemas import InvoiceEmailStatus, InvoiceJob, InvoiceJobStatus
from tabletop.schemas.domain import utcnow
from tabletop.services import IInvoiceService, Recipient
from tabletop.storage import IInvoiceJobQueue, IOrderRepository

logger = structlog.get_logger().bind(component="invoice_retry")


async def retry_job(
    job: InvoiceJob,
    queue: IInvoiceJobQueue,
    orders: IOrderRepository,
    invoices: IInvoiceService,
    state_machine: OrderStateMachine,
    now: Optional[datetime] = None,
) -> InvoiceJob:
    """Send one claimed job; returns the job as saved."""
    order = await orders.get(job.order_id)
    if order is None:
        failed = job.model_copy(update={"status": InvoiceJobStatus.FAILED, "last_error": "order not found"})
        logger.error("invoice_retry_order_missing", job_id=job.job_id, order_id=job.order_id)
        return await queue.save(failed)

    try:
        invoice = await invoices.generate(order, invoice_number=job.invoice_number)
        await invoices.send(invoice, Recipient(email=job.recipient_email, name=job.recipient_name or "Guest"))
    except Exception as e:
        retried = job.model_copy(update={"last_error": str(e)}).schedule_retry(
            settings.INVOICE_RETRY_BACKOFF_MINUTES, now=now
        )
        saved = await queue.save(retried)
        if saved.status == InvoiceJobStatus.FAILED:
            await state_machine.annotate(order, fields={"invoice_email_status": InvoiceEmailStatus.FAILED})
            logger.error("invoice_retry_exhausted", job_id=job.job_id, order_id=job.order_id,
                         attempts=job.attempts, error=str(e))
        else:
            logger.warning("invoice_retry_failed", job_id=job.job_id, order_id=job.order_id,
                           attempts=job.attempts, next_attempt=saved.scheduled_for.isoformat(), error=str(e))
        return saved

    sent = await queue.save(job.model_copy(update={"status": InvoiceJobStatus.SENT, "last_error": None}))
    await state_machine.annotate(order, fields={"invoice_email_status": InvoiceEmailStatus.SENT})
    logger.info("invoice_retry_sent", job_id=job.job_id, order_id=job.order_id, attempts=job.attempts)
    return sent


async def process_due_invoices(
    queue: IInvoiceJobQueue,
    orders: IOrderRepository,
    invoices: IInvoiceService,
    state_machine: OrderStateMachine,
    now: Optional[datetime] = None,
    batch_size: int = job_config.INVOICE_RETRY_BATCH_SIZE,
) -> dict:
    now = now or utcnow()
    stats = {"claimed": 0, "sent": 0, "rescheduled": 0, "failed": 0}

    for job in await queue.get_due(now, batch_size):
        claimed = await queue.claim(job.job_id)
        if claimed is None:
            continue
        stats["claimed"] += 1

        result = await retry_job(claimed, queue, orders, invoices, state_machine, now=now)
        if result.status == InvoiceJobStatus.SENT:
            stats["sent"] += 1
        elif result.status == InvoiceJobStatus.FAILED:
            stats["failed"] += 1
        else:
            stats["rescheduled"] += 1

    if stats["claimed"]:
        logger.info("invoice_retry_cycle_complete", **stats)
    return stats


async def invoice_retry_loop(
    queue: IInvoiceJobQueue,
    orders: IOrderRepository,
    invoices: IInvoiceService,
    state_machine: OrderStateMachine,
    config: JobConfig = job_config,
):
    logger.info(
        "invoice_retry_loop_started",
        interval=config.INVOICE_RETRY_INTERVAL,
        enabled=config.INVOICE_RETRY_ENABLED,
    )

    if not config.INVOICE_RETRY_ENABLED:
        logger.info("invoice_retry_loop_disabled")
        return

    while True:
        try:
            await process_due_invoices(
                queue, orders, invoices, state_machine, batch_size=config.INVOICE_RETRY_BATCH_SIZE
            )
        except Exception as e:
            logger.error("invoice_retry_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(config.INVOICE_RETRY_INTERVAL)


async def get_invoice_queue_stats(queue: IInvoiceJobQueue, config: JobConfig = job_config) -> dict:
    """Queue statistics for the health endpoint."""
    stats = await queue.get_stats()
    return {
        "enabled": config.INVOICE_RETRY_ENABLED,
        "interval_seconds": config.INVOICE_RETRY_INTERVAL,
        **stats,
    }
