"""Escalating reminders for overdue invoices.

The scheduling rules are pure functions over the obligation's reminder
state and an explicit ``now``:

* reminder N (0-based) is due ``schedule[N]`` days after the base point,
  with the default schedule ``[1, 7, 14, 30]`` and every 30 days after that;
* the base point is the last reminder, or the due date if none was sent;
* a computed date already in the past is clamped to ``now`` so an
  obligation that missed its slot becomes eligible immediately.

``ReminderService`` drives the I/O side: it sends through a
``NotificationSender`` and persists the updated state through an
``InvoiceStore``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Protocol
from uuid import UUID, uuid4

import structlog

from bizdesk import metrics
from bizdesk.config import Settings
from bizdesk.exceptions import (
    NotificationFailedError,
    ObligationNotFoundError,
    ReminderNotAllowedError,
)
from bizdesk.models.invoice import Invoice, InvoiceReminder
from bizdesk.services.notification import NotificationSender

logger = structlog.get_logger()

DEFAULT_SCHEDULE_DAYS = (1, 7, 14, 30)
DEFAULT_REPEAT_DAYS = 30
DEFAULT_OUTSTANDING_STATUSES = frozenset({"sent", "overdue", "partial"})

# Invoice fields owned by the reminder flow
REMINDER_STATE_FIELDS = ("reminders_sent", "last_reminder_at", "next_reminder_at", "status")


@dataclass(frozen=True)
class ReminderPolicy:
    """Escalation table and the statuses that still accept reminders."""

    schedule_days: tuple[int, ...] = DEFAULT_SCHEDULE_DAYS
    repeat_days: int = DEFAULT_REPEAT_DAYS
    outstanding_statuses: frozenset[str] = DEFAULT_OUTSTANDING_STATUSES

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReminderPolicy":
        return cls(
            schedule_days=tuple(settings.reminder_schedule_days),
            repeat_days=settings.reminder_repeat_days,
            outstanding_statuses=frozenset(settings.reminder_outstanding_statuses),
        )


DEFAULT_POLICY = ReminderPolicy()


@dataclass
class ReminderStatus:
    """Reminder state of one obligation as of ``now``."""

    reminders_sent: int
    days_overdue: int
    next_reminder_at: datetime | None
    can_send_reminder: bool


# =============================================================================
# Scheduling
# =============================================================================


def reminder_offset_days(reminders_sent: int, policy: ReminderPolicy = DEFAULT_POLICY) -> int:
    """Days between the base point and the next reminder."""
    if 0 <= reminders_sent < len(policy.schedule_days):
        return policy.schedule_days[reminders_sent]
    return policy.repeat_days


def can_send_reminder(obligation: Any, policy: ReminderPolicy = DEFAULT_POLICY) -> bool:
    """Only outstanding obligations (sent, overdue, partially paid) get reminders."""
    return obligation.status in policy.outstanding_statuses


def days_overdue(obligation: Any, now: datetime) -> int:
    return max(0, (now.date() - obligation.due_date).days)


def _as_timestamp(value: date | datetime, now: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=now.tzinfo)


def scheduled_reminder_at(
    obligation: Any,
    now: datetime,
    policy: ReminderPolicy = DEFAULT_POLICY,
) -> datetime:
    """Unclamped slot of the next reminder."""
    base = obligation.last_reminder_at or obligation.due_date
    offset = reminder_offset_days(obligation.reminders_sent or 0, policy)
    return _as_timestamp(base, now) + timedelta(days=offset)


def next_reminder_date(
    obligation: Any,
    now: datetime,
    policy: ReminderPolicy = DEFAULT_POLICY,
) -> datetime:
    """When the next reminder should go out, never earlier than ``now``."""
    return max(scheduled_reminder_at(obligation, now, policy), now)


def is_reminder_due(
    obligation: Any,
    now: datetime,
    policy: ReminderPolicy = DEFAULT_POLICY,
) -> bool:
    """An outstanding, past-due obligation whose reminder slot has arrived.

    A stored ``next_reminder_at`` is honoured as well, so a slot pushed back
    by an earlier send is never brought forward again.
    """
    if not can_send_reminder(obligation, policy) or days_overdue(obligation, now) == 0:
        return False
    if obligation.next_reminder_at is not None and obligation.next_reminder_at > now:
        return False
    return scheduled_reminder_at(obligation, now, policy) <= now


def reminder_status(
    obligation: Any,
    now: datetime,
    policy: ReminderPolicy = DEFAULT_POLICY,
) -> ReminderStatus:
    overdue = days_overdue(obligation, now)
    allowed = can_send_reminder(obligation, policy)

    next_at = None
    if allowed and overdue > 0:
        next_at = next_reminder_date(obligation, now, policy)

    return ReminderStatus(
        reminders_sent=obligation.reminders_sent or 0,
        days_overdue=overdue,
        next_reminder_at=next_at,
        can_send_reminder=allowed,
    )


def apply_reminder_sent(
    obligation: Any,
    now: datetime,
    policy: ReminderPolicy = DEFAULT_POLICY,
) -> None:
    """Advance the obligation's reminder state after a successful send."""
    obligation.reminders_sent = (obligation.reminders_sent or 0) + 1
    obligation.last_reminder_at = now

    next_at = now + timedelta(days=reminder_offset_days(obligation.reminders_sent, policy))
    previous = obligation.next_reminder_at
    obligation.next_reminder_at = max(next_at, previous) if previous else next_at

    if obligation.status == "sent" and days_overdue(obligation, now) > 0:
        obligation.status = "overdue"


# =============================================================================
# Service
# =============================================================================


class InvoiceStore(Protocol):
    """Persistence for invoices and their reminder history."""

    async def get(self, invoice_id: UUID) -> Invoice | None:
        ...

    async def list_reminder_candidates(
        self,
        now: datetime,
        statuses: frozenset[str],
        limit: int,
    ) -> list[Invoice]:
        """Outstanding invoices past their due date."""
        ...

    async def list_reminders(self, invoice_id: UUID) -> list[InvoiceReminder]:
        ...

    async def record_reminder(self, invoice: Invoice, reminder: InvoiceReminder) -> Invoice:
        ...


@dataclass
class ReminderError:
    invoice_id: UUID
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"invoice_id": str(self.invoice_id), "code": self.code, "message": self.message}


@dataclass
class ReminderBatchReport:
    sent: list[InvoiceReminder] = field(default_factory=list)
    errors: list[ReminderError] = field(default_factory=list)
    candidates: int = 0

    @property
    def sent_count(self) -> int:
        return len(self.sent)


class ReminderService:
    """Sends invoice reminders and keeps their reminder state current."""

    def __init__(
        self,
        store: InvoiceStore,
        sender: NotificationSender,
        policy: ReminderPolicy = DEFAULT_POLICY,
        batch_limit: int = 500,
    ):
        self.store = store
        self.sender = sender
        self.policy = policy
        self.batch_limit = batch_limit

    async def get_status(self, invoice_id: UUID, now: datetime) -> tuple[ReminderStatus, list[InvoiceReminder]]:
        invoice = await self.store.get(invoice_id)
        if invoice is None:
            raise ObligationNotFoundError(invoice_id)

        history = await self.store.list_reminders(invoice_id)
        return reminder_status(invoice, now, self.policy), history

    async def send_reminder(
        self,
        invoice_id: UUID,
        now: datetime,
        reminder_type: str = "overdue",
        to: str | None = None,
    ) -> InvoiceReminder:
        """Send one reminder now, regardless of the escalation slot."""
        invoice = await self.store.get(invoice_id)
        if invoice is None:
            raise ObligationNotFoundError(invoice_id)

        return await self._send(invoice, now, reminder_type, to)

    async def send_due_reminders(self, now: datetime) -> ReminderBatchReport:
        """Send every reminder whose slot has arrived; failures stay per invoice."""
        candidates = await self.store.list_reminder_candidates(
            now, self.policy.outstanding_statuses, self.batch_limit
        )

        report = ReminderBatchReport(candidates=len(candidates))
        for invoice in candidates:
            if not is_reminder_due(invoice, now, self.policy):
                continue
            try:
                reminder = await self._send(invoice, now, "overdue", None)
            except Exception as e:
                code = getattr(e, "code", "UNEXPECTED_ERROR")
                report.errors.append(
                    ReminderError(invoice_id=invoice.id, code=code, message=getattr(e, "message", str(e)))
                )
                metrics.reminders_failed_total.labels(code=code).inc()
                logger.error("reminder_send_failed", invoice_id=str(invoice.id), code=code, error=str(e))
                continue
            report.sent.append(reminder)

        logger.info(
            "reminder_batch_completed",
            candidates=report.candidates,
            sent=report.sent_count,
            errors=len(report.errors),
        )
        return report

    async def _send(
        self,
        invoice: Invoice,
        now: datetime,
        reminder_type: str,
        to: str | None,
    ) -> InvoiceReminder:
        if not can_send_reminder(invoice, self.policy):
            raise ReminderNotAllowedError(invoice.id, f"status is '{invoice.status}'")

        recipient = to or invoice.recipient_email
        if not recipient:
            raise ReminderNotAllowedError(invoice.id, "no recipient email address available")

        result = await self.sender.send(invoice, reminder_type, recipient=recipient)
        if not result.success:
            raise NotificationFailedError(invoice.id, result.error or "unknown error")

        overdue = days_overdue(invoice, now)
        previous = {name: getattr(invoice, name) for name in REMINDER_STATE_FIELDS}
        apply_reminder_sent(invoice, now, self.policy)
        reminder = InvoiceReminder(
            id=uuid4(),
            invoice_id=invoice.id,
            sent_at=now,
            sent_to=recipient,
            reminder_type=reminder_type,
            days_overdue=overdue,
            status="sent",
            created_at=now,
            updated_at=now,
        )
        try:
            await self.store.record_reminder(invoice, reminder)
        except Exception:
            for name, value in previous.items():
                setattr(invoice, name, value)
            raise

        metrics.reminders_sent_total.labels(reminder_type=reminder_type).inc()
        logger.info(
            "reminder_sent",
            invoice_id=str(invoice.id),
            reminder_type=reminder_type,
            reminders_sent=invoice.reminders_sent,
            next_reminder_at=invoice.next_reminder_at.isoformat(),
        )
        return reminder
