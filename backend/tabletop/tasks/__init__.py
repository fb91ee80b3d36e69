from tabletop.tasks.coin_expiry import coin_expiry_loop, run_expiry_sweep
from tabletop.tasks.invoice_retry import (
    get_invoice_queue_stats,
    invoice_retry_loop,
    process_due_invoices,
)
