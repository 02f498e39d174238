"""SQLAlchemy implementations of the rule, instance and invoice stores.

Rules and invoices handed to the engine are detached from the session:
they are plain values for the duration of a batch, and a rollback after one
failed write cannot expire the objects still waiting to be processed.
``save`` merges the value back; the rule's ``version`` column makes the
merge fail with ``StaleDataError`` if a user edit landed in between.
"""

from datetime import date, datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bizdesk.exceptions import PersistenceError, StoreUnavailableError, UniquenessViolation
from bizdesk.models.invoice import Invoice, InvoiceReminder
from bizdesk.models.recurrence import GeneratedInstance, RecurrenceRule

logger = structlog.get_logger()

UNIQUE_INSTANCE_CONSTRAINT = "uq_generated_instance_rule_due"


class SqlRuleStore:
    """Rule store backed by the ``recurrence_rules`` table."""

    def __init__(self, db: AsyncSession, batch_limit: int = 500):
        self.db = db
        self.batch_limit = batch_limit

    def _pending_clause(self, now: datetime, owner_id: UUID | None):
        clause = and_(
            RecurrenceRule.is_active.is_(True),
            RecurrenceRule.next_due_at <= now,
        )
        if owner_id is not None:
            clause = and_(clause, RecurrenceRule.owner_id == owner_id)
        return clause

    def _due_clause(self, now: datetime, owner_id: UUID | None):
        return and_(
            self._pending_clause(now, owner_id),
            or_(RecurrenceRule.end_date.is_(None), RecurrenceRule.end_date >= now.date()),
        )

    async def _fetch(self, clause) -> list[RecurrenceRule]:
        query = (
            select(RecurrenceRule)
            .where(clause)
            .order_by(RecurrenceRule.next_due_at, RecurrenceRule.id)
            .limit(self.batch_limit)
        )
        try:
            result = await self.db.execute(query)
            rules = list(result.scalars().all())
        except (OSError, SQLAlchemyError) as e:
            logger.error("rule_store_unavailable", error=str(e))
            raise StoreUnavailableError(f"could not load recurrence rules: {e}") from e

        for rule in rules:
            self.db.expunge(rule)
        return rules

    async def get_due_rules(self, now: datetime, owner_id: UUID | None = None) -> list[RecurrenceRule]:
        return await self._fetch(self._due_clause(now, owner_id))

    async def get_lapsed_rules(self, now: datetime, owner_id: UUID | None = None) -> list[RecurrenceRule]:
        return await self._fetch(
            and_(
                self._pending_clause(now, owner_id),
                RecurrenceRule.end_date.is_not(None),
                RecurrenceRule.end_date < now.date(),
            )
        )

    async def count_due_rules(self, now: datetime, owner_id: UUID | None = None) -> int:
        query = select(func.count()).select_from(RecurrenceRule).where(self._due_clause(now, owner_id))
        try:
            result = await self.db.execute(query)
        except (OSError, SQLAlchemyError) as e:
            raise StoreUnavailableError(f"could not count recurrence rules: {e}") from e
        return result.scalar_one()

    async def get(self, rule_id: UUID) -> RecurrenceRule | None:
        try:
            rule = await self.db.get(RecurrenceRule, rule_id)
        except SQLAlchemyError as e:
            raise PersistenceError("get_rule", str(e)) from e
        if rule is not None:
            self.db.expunge(rule)
        return rule

    async def save(self, rule: RecurrenceRule) -> RecurrenceRule:
        try:
            merged = await self.db.merge(rule)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("save_rule", str(e)) from e

        # Carry the bumped version so a later save of the same value passes
        rule.version = merged.version
        self.db.expunge(merged)
        return rule


class SqlInstanceStore:
    """Instance store backed by the ``generated_instances`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, rule_id: UUID, due_date: date) -> bool:
        query = select(
            exists().where(
                GeneratedInstance.rule_id == rule_id,
                GeneratedInstance.due_date == due_date,
            )
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError("instance_exists", str(e)) from e
        return bool(result.scalar())

    async def create(
        self, instance: GeneratedInstance, invoice: Invoice | None = None
    ) -> GeneratedInstance:
        try:
            async with self.db.begin_nested():
                # The instance goes first so a duplicate reports its own constraint
                self.db.add(instance)
                await self.db.flush()
                if invoice is not None:
                    self.db.add(invoice)
                    await self.db.flush()
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if UNIQUE_INSTANCE_CONSTRAINT in str(e.orig):
                raise UniquenessViolation(instance.rule_id, instance.due_date) from e
            raise PersistenceError("create_instance", str(e)) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("create_instance", str(e)) from e

        self.db.expunge(instance)
        if invoice is not None:
            self.db.expunge(invoice)
        return instance

    async def list_recent(self, limit: int, owner_id: UUID | None = None) -> list[GeneratedInstance]:
        query = select(GeneratedInstance)
        if owner_id is not None:
            query = query.where(GeneratedInstance.owner_id == owner_id)
        query = query.order_by(GeneratedInstance.created_at.desc()).limit(limit)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError("list_instances", str(e)) from e
        return list(result.scalars().all())


class SqlInvoiceStore:
    """Invoice store used by the reminder flow."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, invoice_id: UUID) -> Invoice | None:
        try:
            invoice = await self.db.get(Invoice, invoice_id)
        except SQLAlchemyError as e:
            raise PersistenceError("get_invoice", str(e)) from e
        if invoice is not None:
            self.db.expunge(invoice)
        return invoice

    async def list_reminder_candidates(
        self,
        now: datetime,
        statuses: frozenset[str],
        limit: int,
    ) -> list[Invoice]:
        query = (
            select(Invoice)
            .where(
                Invoice.status.in_(sorted(statuses)),
                Invoice.due_date < now.date(),
                or_(Invoice.next_reminder_at.is_(None), Invoice.next_reminder_at <= now),
            )
            .order_by(Invoice.due_date, Invoice.id)
            .limit(limit)
        )
        try:
            result = await self.db.execute(query)
            invoices = list(result.scalars().all())
        except (OSError, SQLAlchemyError) as e:
            raise StoreUnavailableError(f"could not load invoices: {e}") from e

        for invoice in invoices:
            self.db.expunge(invoice)
        return invoices

    async def list_reminders(self, invoice_id: UUID) -> list[InvoiceReminder]:
        query = (
            select(InvoiceReminder)
            .where(InvoiceReminder.invoice_id == invoice_id)
            .order_by(InvoiceReminder.sent_at.desc())
        )
        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError("list_reminders", str(e)) from e
        return list(result.scalars().all())

    async def record_reminder(self, invoice: Invoice, reminder: InvoiceReminder) -> Invoice:
        try:
            merged = await self.db.merge(invoice)
            self.db.add(reminder)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("record_reminder", str(e)) from e

        self.db.expunge(merged)
        self.db.expunge(reminder)
        return invoice
