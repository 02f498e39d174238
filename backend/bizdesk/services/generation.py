"""Generation coordinator: turns due recurrence rules into concrete instances.

One batch pulls every due rule, materializes at most one instance per
``(rule_id, due_date)``, advances the rule and reports a tagged outcome per
rule. Rules are processed sequentially and in isolation; a failing rule is
recorded in the report and never stops the others.

Idempotency is best-effort on this side (an ``exists`` check before
``create``). The instance store's unique constraint on
``(rule_id, due_date)`` is the authoritative guard: a ``UniquenessViolation``
coming back from ``create`` means a concurrent batch won the race and is
treated as "already generated".
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Protocol
from decimal import Decimal
from uuid import UUID, uuid4

import structlog

from bizdesk import metrics
from bizdesk.exceptions import (
    BizdeskError,
    CalculationError,
    RecurrenceValidationError,
    RuleNotFoundError,
    UniquenessViolation,
)
from bizdesk.models.invoice import Invoice
from bizdesk.models.recurrence import GeneratedInstance, RecurrenceRule
from bizdesk.services.occurrence import compute_next_occurrence, occurrence_date, validate_rule

logger = structlog.get_logger()

# Initial lifecycle status of a generated instance, per target type
INITIAL_STATUS = {
    "task": "pending",
    "invoice": "draft",
}

# Invoice defaults when the rule template does not set them
DEFAULT_INVOICE_PREFIX = "INV"
DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_CURRENCY = "USD"


# =============================================================================
# Store interfaces
# =============================================================================


class RuleStore(Protocol):
    """Persistence for recurrence rules as seen by the generator."""

    async def get_due_rules(self, now: datetime, owner_id: UUID | None = None) -> list[RecurrenceRule]:
        """Active rules with ``next_due_at <= now`` whose end date (if any) is not before ``now``."""
        ...

    async def get_lapsed_rules(self, now: datetime, owner_id: UUID | None = None) -> list[RecurrenceRule]:
        """Active rules with ``next_due_at <= now`` whose end date is before ``now``."""
        ...

    async def count_due_rules(self, now: datetime, owner_id: UUID | None = None) -> int:
        ...

    async def get(self, rule_id: UUID) -> RecurrenceRule | None:
        ...

    async def save(self, rule: RecurrenceRule) -> RecurrenceRule:
        ...


class InstanceStore(Protocol):
    """Persistence for generated instances."""

    async def exists(self, rule_id: UUID, due_date: date) -> bool:
        ...

    async def create(
        self, instance: GeneratedInstance, invoice: Invoice | None = None
    ) -> GeneratedInstance:
        """Persist ``instance`` (and the draft ``invoice`` it stands for) atomically.

        Raises ``UniquenessViolation`` on a duplicate, in which case neither
        row is written.
        """
        ...

    async def list_recent(self, limit: int, owner_id: UUID | None = None) -> list[GeneratedInstance]:
        ...


# =============================================================================
# Results
# =============================================================================


class OutcomeKind(str, Enum):
    """What happened to one rule during a batch."""

    CREATED = "created"
    ALREADY_GENERATED = "already_generated"
    DEACTIVATED = "deactivated"
    FAILED = "failed"


@dataclass
class RuleError:
    """A rule-scoped failure recorded in the batch report."""

    rule_id: UUID
    code: str
    message: str

    @classmethod
    def from_exception(cls, rule_id: UUID, exc: Exception) -> "RuleError":
        if isinstance(exc, BizdeskError):
            return cls(rule_id=rule_id, code=exc.code, message=exc.message)
        return cls(rule_id=rule_id, code="UNEXPECTED_ERROR", message=str(exc) or type(exc).__name__)

    def to_dict(self) -> dict[str, str]:
        return {"rule_id": str(self.rule_id), "code": self.code, "message": self.message}


@dataclass
class RuleOutcome:
    """Tagged result of processing a single rule."""

    rule_id: UUID
    kind: OutcomeKind
    due_date: date | None = None
    next_due_at: datetime | None = None
    instance: GeneratedInstance | None = None
    invoice: Invoice | None = None
    error: RuleError | None = None

    @property
    def ok(self) -> bool:
        return self.kind is not OutcomeKind.FAILED


@dataclass
class GenerationReport:
    """Aggregated result of one batch run."""

    outcomes: list[RuleOutcome] = field(default_factory=list)
    ready_for_generation_count: int = 0

    @property
    def created(self) -> list[GeneratedInstance]:
        return [o.instance for o in self.outcomes if o.kind is OutcomeKind.CREATED and o.instance]

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def errors(self) -> list[RuleError]:
        return [o.error for o in self.outcomes if o.error is not None]

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.kind is OutcomeKind.ALREADY_GENERATED)

    @property
    def deactivated_count(self) -> int:
        return sum(1 for o in self.outcomes if o.kind is OutcomeKind.DEACTIVATED)


@dataclass
class GenerationStatus:
    """Read-only view of pending work and recent output."""

    ready_for_generation_count: int
    recent_generations: list[GeneratedInstance]


def build_instance(rule: RecurrenceRule, due_date: date, now: datetime) -> GeneratedInstance:
    """Materialize the rule's payload snapshot for one due date."""
    return GeneratedInstance(
        id=uuid4(),
        rule_id=rule.id,
        target_type=rule.target_type,
        owner_type=rule.owner_type,
        owner_id=rule.owner_id,
        due_date=due_date,
        status=INITIAL_STATUS.get(rule.target_type, "pending"),
        created_at=now,
        updated_at=now,
        **rule.payload_snapshot(),
    )


def invoice_number_for(rule: RecurrenceRule, due_date: date) -> str:
    """Stable number for the invoice generated on ``due_date``.

    ``PREFIX-YEAR-RULE-MMDD``: the rule part keeps numbers unique across
    rules, the date part across occurrences of one rule.
    """
    prefix = str((rule.extra_data or {}).get("invoice_prefix") or DEFAULT_INVOICE_PREFIX)[:16]
    return f"{prefix}-{due_date.year}-{rule.id.hex[:8].upper()}-{due_date:%m%d}"


def build_invoice(rule: RecurrenceRule, due_date: date, now: datetime) -> Invoice:
    """Draft invoice for one occurrence of an invoice rule.

    Issued on the occurrence date and due ``payment_terms_days`` later. The
    amount, currency, recipient and project come from the rule template.
    """
    template = rule.extra_data or {}
    try:
        project_id = template.get("project_id")
        project_id = UUID(str(project_id)) if project_id else None
        terms = timedelta(days=int(template.get("payment_terms_days", DEFAULT_PAYMENT_TERMS_DAYS)))
        total = Decimal(str(template.get("total", 0)))
    except (ArithmeticError, TypeError, ValueError) as e:
        raise RecurrenceValidationError([f"invalid invoice template: {e}"], rule_id=rule.id) from e

    return Invoice(
        id=uuid4(),
        invoice_number=invoice_number_for(rule, due_date),
        client_id=rule.owner_id,
        project_id=project_id,
        recurrence_rule_id=rule.id,
        status=INITIAL_STATUS["invoice"],
        issue_date=due_date,
        due_date=due_date + terms,
        total=total,
        amount_paid=Decimal(0),
        currency=template.get("currency") or DEFAULT_CURRENCY,
        recipient_email=template.get("recipient_email"),
        reminders_sent=0,
        last_reminder_at=None,
        next_reminder_at=None,
        created_at=now,
        updated_at=now,
    )


# =============================================================================
# Coordinator
# =============================================================================


class GenerationCoordinator:
    """Runs generation batches against a rule store and an instance store."""

    def __init__(
        self,
        rule_store: RuleStore,
        instance_store: InstanceStore,
        recent_limit: int = 10,
    ):
        self.rule_store = rule_store
        self.instance_store = instance_store
        self.recent_limit = recent_limit

    async def run(self, now: datetime, owner_id: UUID | None = None) -> GenerationReport:
        """Process every rule due at ``now``.

        Store failures while fetching the candidate rules propagate
        (``StoreUnavailableError``); everything after that is captured per
        rule in the returned report.
        """
        due_rules = await self.rule_store.get_due_rules(now, owner_id=owner_id)
        lapsed_rules = await self.rule_store.get_lapsed_rules(now, owner_id=owner_id)

        seen: set[UUID] = set()
        candidates: list[RecurrenceRule] = []
        for rule in [*due_rules, *lapsed_rules]:
            if rule.id not in seen:
                seen.add(rule.id)
                candidates.append(rule)

        report = GenerationReport(ready_for_generation_count=len(due_rules))
        for rule in candidates:
            report.outcomes.append(await self._process_rule(rule, now))

        metrics.generation_batches_total.inc()
        logger.info(
            "generation_batch_completed",
            owner_id=str(owner_id) if owner_id else None,
            rules_processed=len(candidates),
            created=report.created_count,
            skipped=report.skipped_count,
            deactivated=report.deactivated_count,
            errors=len(report.errors),
        )
        return report

    async def trigger_rule(self, rule_id: UUID, now: datetime) -> RuleOutcome:
        """Generate the rule's pending occurrence now, whether or not it is due."""
        rule = await self.rule_store.get(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        if not rule.is_active:
            raise RecurrenceValidationError(["rule is inactive"], rule_id=rule_id)

        return await self._process_rule(rule, now)

    async def status(self, now: datetime, owner_id: UUID | None = None) -> GenerationStatus:
        """Count of rules ready to generate and the most recent instances."""
        ready = await self.rule_store.count_due_rules(now, owner_id=owner_id)
        recent = await self.instance_store.list_recent(self.recent_limit, owner_id=owner_id)
        return GenerationStatus(ready_for_generation_count=ready, recent_generations=recent)

    async def _process_rule(self, rule: RecurrenceRule, now: datetime) -> RuleOutcome:
        rule_id = rule.id
        try:
            outcome = await self._generate(rule, now)
        except Exception as e:
            error = RuleError.from_exception(rule_id, e)
            metrics.rule_errors_total.labels(code=error.code).inc()
            logger.error(
                "rule_generation_failed",
                rule_id=str(rule_id),
                code=error.code,
                error=error.message,
            )
            return RuleOutcome(rule_id=rule_id, kind=OutcomeKind.FAILED, error=error)

        self._record(outcome, rule)
        return outcome

    async def _generate(self, rule: RecurrenceRule, now: datetime) -> RuleOutcome:
        due_date = occurrence_date(rule.next_due_at)

        # A rule whose pending occurrence lies past its end date terminates here
        if rule.end_date is not None and due_date > rule.end_date:
            await self._save_advanced(rule, is_active=False)
            return RuleOutcome(rule_id=rule.id, kind=OutcomeKind.DEACTIVATED, due_date=due_date)

        validate_rule(rule)

        instance = invoice = None
        if not await self.instance_store.exists(rule.id, due_date):
            if rule.target_type == "invoice":
                invoice = build_invoice(rule, due_date, now)
            try:
                instance = await self.instance_store.create(
                    build_instance(rule, due_date, now), invoice=invoice
                )
            except UniquenessViolation:
                invoice = None
                logger.info("rule_instance_race_lost", rule_id=str(rule.id), due_date=str(due_date))

        try:
            next_due_at = compute_next_occurrence(rule, rule.next_due_at)
        except BizdeskError:
            raise
        except Exception as e:
            raise CalculationError(str(e), rule_id=rule.id) from e

        await self._save_advanced(rule, next_due_at=next_due_at, last_generated_at=now)

        kind = OutcomeKind.CREATED if instance is not None else OutcomeKind.ALREADY_GENERATED
        return RuleOutcome(
            rule_id=rule.id,
            kind=kind,
            due_date=due_date,
            next_due_at=next_due_at,
            instance=instance,
            invoice=invoice,
        )

    async def _save_advanced(self, rule: RecurrenceRule, **changes: Any) -> None:
        """Apply generator-owned field changes and persist them.

        On failure the in-memory rule is restored, so a rule whose write did
        not land is never reported or reused as advanced.
        """
        previous = {name: getattr(rule, name) for name in changes}
        for name, value in changes.items():
            setattr(rule, name, value)
        try:
            await self.rule_store.save(rule)
        except Exception:
            for name, value in previous.items():
                setattr(rule, name, value)
            raise

    def _record(self, outcome: RuleOutcome, rule: RecurrenceRule) -> None:
        log_context: dict[str, Any] = {
            "rule_id": str(outcome.rule_id),
            "due_date": str(outcome.due_date) if outcome.due_date else None,
        }

        if outcome.kind is OutcomeKind.CREATED:
            metrics.instances_generated_total.labels(target_type=rule.target_type).inc()
            logger.info(
                "rule_instance_created",
                instance_id=str(outcome.instance.id),
                invoice_number=outcome.invoice.invoice_number if outcome.invoice else None,
                next_due_at=outcome.next_due_at.isoformat(),
                **log_context,
            )
        elif outcome.kind is OutcomeKind.ALREADY_GENERATED:
            metrics.generation_skipped_total.inc()
            logger.info("rule_instance_exists", **log_context)
        elif outcome.kind is OutcomeKind.DEACTIVATED:
            metrics.rules_deactivated_total.inc()
            logger.info("rule_deactivated", end_date=str(rule.end_date), **log_context)
