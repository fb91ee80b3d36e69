from tabletop.services.assignment import (
    Assignment,
    AssignmentResult,
    IAssignmentService,
    RosterAssignmentService,
)
from tabletop.services.invoice import (
    EmailMessage,
    IEmailSender,
    IInvoiceService,
    InvoiceService,
    LoggingEmailSender,
    Recipient,
    SendStatus,
)
