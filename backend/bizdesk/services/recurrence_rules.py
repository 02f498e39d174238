"""Recurrence rule service for creating, editing and deactivating rules."""

from datetime import date, datetime, time, timezone
from typing import Any, Sequence
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bizdesk.exceptions import PersistenceError, RecurrenceValidationError, RuleNotFoundError
from bizdesk.models.recurrence import RecurrenceRule
from bizdesk.services.occurrence import first_occurrence, occurrence_date, validate_rule

logger = structlog.get_logger()

# Fields whose change moves the schedule and therefore next_due_at
SCHEDULE_FIELDS = frozenset(
    {"frequency", "interval", "weekdays", "day_of_month", "start_date"}
)

# Fields a user may edit; next_due_at/last_generated_at belong to the generator
EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "priority",
        "tags",
        "estimated_hours",
        "assignee_id",
        "extra_data",
        "frequency",
        "interval",
        "weekdays",
        "day_of_month",
        "start_date",
        "end_date",
        "is_active",
        "next_due_at",
    }
)

# Editable fields backed by NOT NULL columns
REQUIRED_FIELDS = frozenset(
    {"title", "priority", "tags", "extra_data", "frequency", "interval", "start_date", "is_active"}
)


def due_timestamp(day: date) -> datetime:
    """Occurrence timestamp for a calendar date (midnight UTC)."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def initial_next_due_at(rule: RecurrenceRule, today: date | None = None) -> datetime:
    """First due timestamp of a new or reactivated rule."""
    return due_timestamp(first_occurrence(rule, on_or_after=today))


def apply_rule_changes(rule: RecurrenceRule, changes: dict[str, Any], today: date) -> RecurrenceRule:
    """Apply a user edit to ``rule`` in place.

    * a schedule change on an active rule recomputes ``next_due_at`` from
      ``max(start_date, today)``;
    * reactivating an inactive rule does the same, and is refused when the
      end date already lies before that first occurrence;
    * an explicit ``next_due_at`` wins over both, but may not precede the
      start date.
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise RecurrenceValidationError(
            [f"field '{name}' cannot be edited" for name in sorted(unknown)],
            rule_id=rule.id,
        )

    cleared = sorted(name for name in REQUIRED_FIELDS & set(changes) if changes[name] is None)
    if cleared:
        raise RecurrenceValidationError(
            [f"field '{name}' cannot be cleared" for name in cleared],
            rule_id=rule.id,
        )

    was_active = rule.is_active
    for name, value in changes.items():
        setattr(rule, name, value)

    validate_rule(rule)

    reactivated = not was_active and rule.is_active
    schedule_changed = bool(SCHEDULE_FIELDS & set(changes))

    if "next_due_at" in changes:
        if changes["next_due_at"] is None:
            raise RecurrenceValidationError(["next due date cannot be cleared"], rule_id=rule.id)
    elif reactivated or (rule.is_active and schedule_changed):
        rule.next_due_at = initial_next_due_at(rule, today)

    if occurrence_date(rule.next_due_at) < rule.start_date:
        raise RecurrenceValidationError(
            ["next due date is before the start date"], rule_id=rule.id
        )

    if reactivated and rule.end_date and occurrence_date(rule.next_due_at) > rule.end_date:
        raise RecurrenceValidationError(
            ["rule cannot be reactivated: its end date has passed"], rule_id=rule.id
        )

    return rule


class RecurrenceRuleService:
    """Service for managing recurrence rules."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_rule(
        self,
        owner_id: UUID,
        title: str,
        frequency: str,
        start_date: date,
        target_type: str = "task",
        owner_type: str = "project",
        interval: int = 1,
        weekdays: list[int] | None = None,
        day_of_month: int | None = None,
        end_date: date | None = None,
        next_due_at: datetime | None = None,
        description: str | None = None,
        priority: str = "medium",
        tags: list[str] | None = None,
        estimated_hours: float | None = None,
        assignee_id: UUID | None = None,
        extra_data: dict | None = None,
        is_active: bool = True,
        created_by_id: UUID | None = None,
    ) -> RecurrenceRule:
        """Create a new recurrence rule."""
        rule = RecurrenceRule(
            owner_id=owner_id,
            owner_type=owner_type,
            target_type=target_type,
            title=title,
            description=description,
            priority=priority,
            tags=tags or [],
            estimated_hours=estimated_hours,
            assignee_id=assignee_id,
            extra_data=extra_data or {},
            frequency=frequency,
            interval=interval,
            weekdays=sorted(set(weekdays)) if weekdays else None,
            day_of_month=day_of_month,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
            created_by_id=created_by_id,
        )
        validate_rule(rule)

        rule.next_due_at = next_due_at or initial_next_due_at(rule)
        if occurrence_date(rule.next_due_at) < start_date:
            raise RecurrenceValidationError(["next due date is before the start date"])

        self.db.add(rule)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("create_rule", str(e)) from e
        await self.db.refresh(rule)

        logger.info(
            "recurrence_rule_created",
            rule_id=str(rule.id),
            owner_id=str(owner_id),
            frequency=frequency,
            next_due_at=rule.next_due_at.isoformat(),
        )

        return rule

    async def get_rule(self, rule_id: UUID) -> RecurrenceRule | None:
        """Get a recurrence rule by ID."""
        return await self.db.get(RecurrenceRule, rule_id)

    async def list_rules(
        self,
        owner_id: UUID | None = None,
        target_type: str | None = None,
        active_only: bool = True,
    ) -> Sequence[RecurrenceRule]:
        """List recurrence rules, optionally for one owner."""
        query = select(RecurrenceRule)

        if owner_id is not None:
            query = query.where(RecurrenceRule.owner_id == owner_id)
        if target_type is not None:
            query = query.where(RecurrenceRule.target_type == target_type)
        if active_only:
            query = query.where(RecurrenceRule.is_active.is_(True))

        query = query.order_by(RecurrenceRule.created_at.desc())

        result = await self.db.execute(query)
        return result.scalars().all()

    async def update_rule(
        self,
        rule_id: UUID,
        changes: dict[str, Any],
        today: date,
    ) -> RecurrenceRule:
        """Apply a user edit. A concurrent generator write surfaces as ``PersistenceError``."""
        rule = await self.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)

        if "weekdays" in changes and changes["weekdays"]:
            changes = {**changes, "weekdays": sorted(set(changes["weekdays"]))}

        try:
            apply_rule_changes(rule, changes, today)
        except RecurrenceValidationError:
            await self.db.rollback()
            raise

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError("update_rule", str(e)) from e
        await self.db.refresh(rule)

        logger.info("recurrence_rule_updated", rule_id=str(rule_id), fields=sorted(changes))
        return rule

    async def deactivate_rule(self, rule_id: UUID, today: date) -> RecurrenceRule:
        """Explicit user deactivation."""
        return await self.update_rule(rule_id, {"is_active": False}, today)

    async def delete_rule(self, rule_id: UUID) -> bool:
        """Delete a recurrence rule. Generated instances are kept."""
        result = await self.db.execute(
            delete(RecurrenceRule).where(RecurrenceRule.id == rule_id)
        )
        await self.db.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info("recurrence_rule_deleted", rule_id=str(rule_id))

        return deleted
