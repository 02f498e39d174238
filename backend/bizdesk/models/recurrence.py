"""Recurrence rule and generated instance models."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from bizdesk.db.base import BaseModel

# Template fields copied verbatim from a rule onto every instance it generates
PAYLOAD_FIELDS = (
    "title",
    "description",
    "priority",
    "tags",
    "estimated_hours",
    "assignee_id",
    "extra_data",
)


class RecurrenceRule(BaseModel):
    """Schedule that materializes one task or invoice per occurrence."""

    __tablename__ = "recurrence_rules"

    # What gets generated and who it belongs to
    target_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="task"
    )  # task, invoice
    owner_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="project"
    )  # project, client
    owner_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), nullable=False, index=True
    )

    # Template payload
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    estimated_hours: Mapped[float | None] = mapped_column(nullable=True)
    assignee_id: Mapped[UUID | None] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    # Invoice templates keep line items, tax and discount settings here
    extra_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # Recurrence pattern
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)  # daily, weekly, monthly, yearly
    interval: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    weekdays: Mapped[list[int] | None] = mapped_column(JSONB, nullable=True)  # 0=Sunday .. 6=Saturday
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Schedule bounds
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Generation state
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_due_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    last_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_by_id: Mapped[UUID | None] = mapped_column(PGUUID(as_uuid=True), nullable=True)

    # Optimistic lock shared by the generator and user edits
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def payload_snapshot(self) -> dict[str, Any]:
        """Template fields to copy onto a generated instance."""
        snapshot = {name: getattr(self, name) for name in PAYLOAD_FIELDS}
        snapshot["tags"] = list(snapshot["tags"] or [])
        snapshot["extra_data"] = dict(snapshot["extra_data"] or {})
        return snapshot

    def __repr__(self) -> str:
        try:
            return f"<RecurrenceRule {self.frequency} {self.title[:30]}>"
        except Exception:
            return f"<RecurrenceRule id={self.id}>"


class GeneratedInstance(BaseModel):
    """Concrete task or invoice materialized for one occurrence of a rule."""

    __tablename__ = "generated_instances"
    __table_args__ = (
        UniqueConstraint("rule_id", "due_date", name="uq_generated_instance_rule_due"),
    )

    # Lookup key only; the instance outlives its rule
    rule_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("recurrence_rules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    target_type: Mapped[str] = mapped_column(String(20), nullable=False)
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False)
    owner_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False, index=True)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="pending"
    )  # tasks: pending, in_progress, done; invoices: draft, sent, ...

    # Copied payload
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")
    tags: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    estimated_hours: Mapped[float | None] = mapped_column(nullable=True)
    assignee_id: Mapped[UUID | None] = mapped_column(PGUUID(as_uuid=True), nullable=True)
    extra_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<GeneratedInstance rule={self.rule_id} due={self.due_date}>"
