from .company import Company
from .fiscal_document import FiscalDocument, FiscalDocumentStatus, TERMINAL_STATUSES
from .queue_entry import QueueEntry, QueueStatus
from .audit_event import AuditEvent

__all__ = [
    "Company",
    "FiscalDocument",
    "FiscalDocumentStatus",
    "TERMINAL_STATUSES",
    "QueueEntry",
    "QueueStatus",
    "AuditEvent",
]
