"""Shared fixtures: rule/invoice factories, in-memory stores and a session double."""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest

from bizdesk.exceptions import PersistenceError, UniquenessViolation
from bizdesk.models.invoice import Invoice, InvoiceReminder
from bizdesk.models.recurrence import GeneratedInstance, RecurrenceRule
from bizdesk.services.notification import NotificationResult

UTC = timezone.utc


def at(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def build_rule(**overrides) -> RecurrenceRule:
    """Transient rule with every column set (column defaults only apply on flush)."""
    values = {
        "id": uuid4(),
        "target_type": "task",
        "owner_type": "project",
        "owner_id": uuid4(),
        "title": "Weekly status report",
        "description": "Summarize progress",
        "priority": "medium",
        "tags": ["reporting"],
        "estimated_hours": 1.5,
        "assignee_id": None,
        "extra_data": {},
        "frequency": "daily",
        "interval": 1,
        "weekdays": None,
        "day_of_month": None,
        "start_date": date(2024, 1, 1),
        "end_date": None,
        "is_active": True,
        "next_due_at": at(2024, 1, 1),
        "last_generated_at": None,
        "created_by_id": None,
        "version": 1,
    }
    values.update(overrides)
    return RecurrenceRule(**values)


def build_invoice(**overrides) -> Invoice:
    values = {
        "id": uuid4(),
        "invoice_number": f"INV-{uuid4().hex[:6].upper()}",
        "client_id": uuid4(),
        "project_id": None,
        "recurrence_rule_id": None,
        "status": "sent",
        "issue_date": date(2024, 2, 1),
        "due_date": date(2024, 3, 1),
        "total": Decimal("1200.00"),
        "amount_paid": Decimal("0"),
        "currency": "USD",
        "recipient_email": "billing@example.com",
        "reminders_sent": 0,
        "last_reminder_at": None,
        "next_reminder_at": None,
    }
    values.update(overrides)
    return Invoice(**values)


class InMemoryRuleStore:
    """Rule store over a dict; ``fail_fetch``/``fail_save_for`` inject failures."""

    def __init__(self, rules=()):
        self.rules: dict[UUID, RecurrenceRule] = {rule.id: rule for rule in rules}
        self.saved: list[UUID] = []
        self.fail_fetch: Exception | None = None
        self.fail_save_for: set[UUID] = set()

    def _pending(self, now, owner_id):
        return [
            rule
            for rule in self.rules.values()
            if rule.is_active
            and rule.next_due_at <= now
            and (owner_id is None or rule.owner_id == owner_id)
        ]

    def _ordered(self, rules):
        return sorted(rules, key=lambda rule: (rule.next_due_at, str(rule.id)))

    async def get_due_rules(self, now, owner_id=None):
        if self.fail_fetch:
            raise self.fail_fetch
        return self._ordered(
            rule
            for rule in self._pending(now, owner_id)
            if rule.end_date is None or rule.end_date >= now.date()
        )

    async def get_lapsed_rules(self, now, owner_id=None):
        if self.fail_fetch:
            raise self.fail_fetch
        return self._ordered(
            rule
            for rule in self._pending(now, owner_id)
            if rule.end_date is not None and rule.end_date < now.date()
        )

    async def count_due_rules(self, now, owner_id=None):
        return len(await self.get_due_rules(now, owner_id))

    async def get(self, rule_id):
        return self.rules.get(rule_id)

    async def save(self, rule):
        if rule.id in self.fail_save_for:
            raise PersistenceError("save_rule", "connection reset")
        rule.version += 1
        self.rules[rule.id] = rule
        self.saved.append(rule.id)
        return rule


class InMemoryInstanceStore:
    """Instance store enforcing uniqueness of (rule_id, due_date)."""

    def __init__(self):
        self.instances: dict[tuple[UUID, date], GeneratedInstance] = {}
        self.invoices: list[Invoice] = []
        self.fail_create_for: dict[UUID, Exception] = {}
        # Simulates a concurrent batch: exists() misses rows it did not see
        self.hidden: set[tuple[UUID, date]] = set()

    def add_existing(self, rule_id: UUID, due_date: date, hidden: bool = False) -> None:
        self.instances[(rule_id, due_date)] = GeneratedInstance(
            id=uuid4(),
            rule_id=rule_id,
            due_date=due_date,
            created_at=at(2024, 1, 1),
        )
        if hidden:
            self.hidden.add((rule_id, due_date))

    async def exists(self, rule_id, due_date):
        key = (rule_id, due_date)
        return key in self.instances and key not in self.hidden

    async def create(self, instance, invoice=None):
        if instance.rule_id in self.fail_create_for:
            raise self.fail_create_for[instance.rule_id]
        key = (instance.rule_id, instance.due_date)
        if key in self.instances:
            raise UniquenessViolation(instance.rule_id, instance.due_date)
        self.instances[key] = instance
        if invoice is not None:
            self.invoices.append(invoice)
        return instance

    async def list_recent(self, limit, owner_id=None):
        instances = [
            i for i in self.instances.values() if owner_id is None or i.owner_id == owner_id
        ]
        instances.sort(key=lambda i: i.created_at, reverse=True)
        return instances[:limit]


class InMemoryInvoiceStore:
    def __init__(self, invoices=()):
        self.invoices: dict[UUID, Invoice] = {invoice.id: invoice for invoice in invoices}
        self.reminders: list[InvoiceReminder] = []
        self.fail_record = False

    async def get(self, invoice_id):
        return self.invoices.get(invoice_id)

    async def list_reminder_candidates(self, now, statuses, limit):
        candidates = [
            invoice
            for invoice in self.invoices.values()
            if invoice.status in statuses and invoice.due_date < now.date()
        ]
        candidates.sort(key=lambda invoice: (invoice.due_date, str(invoice.id)))
        return candidates[:limit]

    async def list_reminders(self, invoice_id):
        return [r for r in reversed(self.reminders) if r.invoice_id == invoice_id]

    async def record_reminder(self, invoice, reminder):
        if self.fail_record:
            raise PersistenceError("record_reminder", "connection reset")
        self.invoices[invoice.id] = invoice
        self.reminders.append(reminder)
        return invoice


class FakeResult:
    def __init__(self, rows=(), value=None):
        self.rows = list(rows)
        self.value = value

    def scalars(self):
        return self

    def all(self):
        return list(self.rows)

    def scalar(self):
        return self.value

    def scalar_one(self):
        return self.value


class FakeSession:
    """Stand-in for ``AsyncSession`` that records the calls the stores make.

    ``fail_<method>`` raises the given exception from that method; ``calls``
    keeps the order of flushes, savepoints, commits and rollbacks.
    """

    def __init__(self, result: FakeResult | None = None):
        self.result = result or FakeResult()
        self.objects: dict = {}
        self.calls: list[str] = []
        self.added: list = []
        self.expunged: list = []
        self.fail_execute: Exception | None = None
        self.fail_flush: Exception | None = None
        self.fail_merge: Exception | None = None
        self.fail_commit: Exception | None = None

    async def execute(self, query):
        self.calls.append("execute")
        if self.fail_execute:
            raise self.fail_execute
        return self.result

    async def get(self, model, ident):
        return self.objects.get(ident)

    async def merge(self, obj):
        self.calls.append("merge")
        if self.fail_merge:
            raise self.fail_merge
        merged = SimpleNamespace(source=obj)
        if hasattr(obj, "version"):
            merged.version = obj.version + 1
        return merged

    def add(self, obj):
        self.added.append(obj)

    async def flush(self):
        self.calls.append("flush")
        if self.fail_flush:
            raise self.fail_flush

    async def commit(self):
        self.calls.append("commit")
        if self.fail_commit:
            raise self.fail_commit

    async def rollback(self):
        self.calls.append("rollback")

    def expunge(self, obj):
        self.expunged.append(obj)

    @asynccontextmanager
    async def begin_nested(self):
        self.calls.append("savepoint")
        try:
            yield self
        except Exception:
            self.calls.append("savepoint_rollback")
            raise


class RecordingSender:
    """Notification sender that records calls and can fail per invoice."""

    def __init__(self):
        self.sent: list[tuple[UUID, str, str | None]] = []
        self.fail_for: set[UUID] = set()

    async def send(self, obligation, reminder_type, recipient=None):
        if obligation.id in self.fail_for:
            return NotificationResult(success=False, recipient=recipient, error="mailbox unavailable")
        self.sent.append((obligation.id, reminder_type, recipient))
        return NotificationResult(success=True, recipient=recipient, message_id=str(uuid4()))


@pytest.fixture
def make_rule():
    return build_rule


@pytest.fixture
def make_invoice():
    return build_invoice


@pytest.fixture
def rule_store():
    return InMemoryRuleStore()


@pytest.fixture
def instance_store():
    return InMemoryInstanceStore()


@pytest.fixture
def invoice_store():
    return InMemoryInvoiceStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def session():
    return FakeSession()
