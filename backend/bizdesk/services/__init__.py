"""Services package."""

from bizdesk.services.generation import GenerationCoordinator, GenerationReport
from bizdesk.services.notification import CeleryNotificationSender
from bizdesk.services.recurrence_rules import RecurrenceRuleService
from bizdesk.services.reminders import ReminderPolicy, ReminderService
from bizdesk.services.stores import SqlInstanceStore, SqlInvoiceStore, SqlRuleStore

__all__ = [
    "CeleryNotificationSender",
    "GenerationCoordinator",
    "GenerationReport",
    "RecurrenceRuleService",
    "ReminderPolicy",
    "ReminderService",
    "SqlInstanceStore",
    "SqlInvoiceStore",
    "SqlRuleStore",
]
