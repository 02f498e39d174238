"""Engine exceptions.

Structured error types for the recurrence and reminder engine. Every error
carries a stable ``code`` so batch reports and API responses can surface it
without leaking internals.
"""

from datetime import date
from typing import Optional
from uuid import UUID


class BizdeskError(Exception):
    """Base exception for engine errors."""

    def __init__(self, message: str, code: str = "BIZDESK_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class RecurrenceValidationError(BizdeskError):
    """A recurrence rule is malformed or internally inconsistent.

    Raised for unknown frequencies, non-positive intervals and constraints
    that do not apply to the rule's frequency (e.g. a day of month on a
    weekly rule). Scoped to a single rule.
    """

    def __init__(self, problems: list[str], rule_id: Optional[UUID] = None):
        self.problems = problems
        self.rule_id = rule_id
        super().__init__(
            message="Invalid recurrence rule: " + "; ".join(problems),
            code="RULE_INVALID",
        )


class PersistenceError(BizdeskError):
    """A store read or write failed.

    The failed rule keeps its previous ``next_due_at`` so the next batch
    retries it.
    """

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(
            message=f"{operation} failed: {message}",
            code="PERSISTENCE_ERROR",
        )


class UniquenessViolation(BizdeskError):
    """An instance already exists for this rule and due date.

    Treated by the generator as "already generated", never as a failure.
    """

    def __init__(self, rule_id: UUID, due_date: date):
        self.rule_id = rule_id
        self.due_date = due_date
        super().__init__(
            message=f"Instance for rule {rule_id} due {due_date.isoformat()} already exists",
            code="INSTANCE_EXISTS",
        )


class CalculationError(BizdeskError):
    """Unexpected failure while computing the next occurrence."""

    def __init__(self, message: str, rule_id: Optional[UUID] = None):
        self.rule_id = rule_id
        super().__init__(message=message, code="CALCULATION_ERROR")


class StoreUnavailableError(BizdeskError):
    """The store could not be reached before any rule was processed.

    The only error allowed to escape a generation batch.
    """

    def __init__(self, message: str):
        super().__init__(message=message, code="STORE_UNAVAILABLE")


class RuleNotFoundError(BizdeskError):
    """Requested recurrence rule does not exist."""

    def __init__(self, rule_id: UUID):
        self.rule_id = rule_id
        super().__init__(
            message=f"Recurrence rule '{rule_id}' not found",
            code="NOT_FOUND",
        )


class ObligationNotFoundError(BizdeskError):
    """Requested invoice does not exist."""

    def __init__(self, invoice_id: UUID):
        self.invoice_id = invoice_id
        super().__init__(
            message=f"Invoice '{invoice_id}' not found",
            code="NOT_FOUND",
        )


class ReminderNotAllowedError(BizdeskError):
    """The obligation cannot receive a reminder right now."""

    def __init__(self, invoice_id: UUID, reason: str):
        self.invoice_id = invoice_id
        self.reason = reason
        super().__init__(
            message=f"Cannot send reminder for invoice '{invoice_id}': {reason}",
            code="REMINDER_NOT_ALLOWED",
        )


class NotificationFailedError(BizdeskError):
    """The notification sender reported a failed delivery."""

    def __init__(self, invoice_id: UUID, message: str):
        self.invoice_id = invoice_id
        super().__init__(
            message=f"Reminder for invoice '{invoice_id}' was not delivered: {message}",
            code="NOTIFICATION_FAILED",
        )
