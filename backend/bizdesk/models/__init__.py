"""SQLAlchemy models package."""

from bizdesk.models.invoice import Invoice, InvoiceReminder
from bizdesk.models.recurrence import PAYLOAD_FIELDS, GeneratedInstance, RecurrenceRule

__all__ = [
    "GeneratedInstance",
    "Invoice",
    "InvoiceReminder",
    "PAYLOAD_FIELDS",
    "RecurrenceRule",
]
