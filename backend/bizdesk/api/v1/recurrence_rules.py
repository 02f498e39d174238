"""Recurrence rule API endpoints."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from bizdesk.api.deps import Clock, Coordinator, RuleService, http_error
from bizdesk.exceptions import BizdeskError
from bizdesk.models.recurrence import RecurrenceRule
from bizdesk.services.generation import RuleOutcome
from bizdesk.services.occurrence import MAX_PREVIEW_OCCURRENCES, upcoming_occurrences

router = APIRouter()
logger = structlog.get_logger()

FREQUENCY_PATTERN = "^(daily|weekly|monthly|yearly)$"


# Request/Response Models
class RecurrenceRuleCreate(BaseModel):
    """Create a recurrence rule."""

    owner_id: UUID
    owner_type: str = Field(default="project", pattern="^(project|client)$")
    target_type: str = Field(default="task", pattern="^(task|invoice)$")
    title: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    priority: str = Field(default="medium", pattern="^(low|medium|high|urgent)$")
    tags: list[str] = Field(default_factory=list)
    estimated_hours: float | None = None
    assignee_id: UUID | None = None
    extra_data: dict = Field(default_factory=dict)
    frequency: str = Field(..., pattern=FREQUENCY_PATTERN)
    interval: int = Field(default=1, ge=1)
    weekdays: list[int] | None = Field(None, description="0=Sunday .. 6=Saturday")
    day_of_month: int | None = Field(None, ge=1, le=31)
    start_date: date
    end_date: date | None = None
    next_due_at: datetime | None = None
    is_active: bool = True
    created_by_id: UUID | None = None


class RecurrenceRuleUpdate(BaseModel):
    """Update a recurrence rule. Only fields that are sent are changed."""

    title: str | None = Field(None, min_length=1, max_length=500)
    description: str | None = None
    priority: str | None = Field(None, pattern="^(low|medium|high|urgent)$")
    tags: list[str] | None = None
    estimated_hours: float | None = None
    assignee_id: UUID | None = None
    extra_data: dict | None = None
    frequency: str | None = Field(None, pattern=FREQUENCY_PATTERN)
    interval: int | None = Field(None, ge=1)
    weekdays: list[int] | None = None
    day_of_month: int | None = Field(None, ge=1, le=31)
    start_date: date | None = None
    end_date: date | None = None
    next_due_at: datetime | None = None
    is_active: bool | None = None


class RecurrenceRuleResponse(BaseModel):
    """Recurrence rule response."""

    id: UUID
    owner_id: UUID
    owner_type: str
    target_type: str
    title: str
    description: str | None
    priority: str
    tags: list[str]
    estimated_hours: float | None
    assignee_id: UUID | None
    extra_data: dict
    frequency: str
    interval: int
    weekdays: list[int] | None
    day_of_month: int | None
    start_date: date
    end_date: date | None
    next_due_at: datetime
    last_generated_at: datetime | None
    is_active: bool
    created_by_id: UUID | None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class GeneratedInstanceResponse(BaseModel):
    """Instance materialized from a rule."""

    id: UUID
    rule_id: UUID | None
    target_type: str
    owner_type: str
    owner_id: UUID
    due_date: date
    status: str
    title: str
    description: str | None
    priority: str
    tags: list[str]
    estimated_hours: float | None
    assignee_id: UUID | None
    extra_data: dict
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class GeneratedInvoiceResponse(BaseModel):
    """Draft invoice created for an invoice rule occurrence."""

    id: UUID
    invoice_number: str
    recurrence_rule_id: UUID | None
    status: str
    issue_date: date
    due_date: date
    total: Decimal
    currency: str

    class Config:
        from_attributes = True


class RuleErrorResponse(BaseModel):
    rule_id: UUID
    code: str
    message: str

    class Config:
        from_attributes = True


class PreviewResponse(BaseModel):
    rule_id: UUID
    occurrences: list[datetime]


class TriggerResponse(BaseModel):
    """Outcome of generating a single rule on demand."""

    rule_id: UUID
    outcome: str
    due_date: date | None = None
    next_due_at: datetime | None = None
    instance: GeneratedInstanceResponse | None = None
    invoice: GeneratedInvoiceResponse | None = None
    error: RuleErrorResponse | None = None


def outcome_response(outcome: RuleOutcome) -> TriggerResponse:
    return TriggerResponse(
        rule_id=outcome.rule_id,
        outcome=outcome.kind.value,
        due_date=outcome.due_date,
        next_due_at=outcome.next_due_at,
        instance=(
            GeneratedInstanceResponse.model_validate(outcome.instance)
            if outcome.instance is not None
            else None
        ),
        invoice=(
            GeneratedInvoiceResponse.model_validate(outcome.invoice)
            if outcome.invoice is not None
            else None
        ),
        error=(
            RuleErrorResponse.model_validate(outcome.error)
            if outcome.error is not None
            else None
        ),
    )


async def _get_rule_or_404(service: RuleService, rule_id: UUID) -> RecurrenceRule:
    rule = await service.get_rule(rule_id)
    if not rule:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Recurrence rule not found",
        )
    return rule


@router.post(
    "",
    response_model=RecurrenceRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_recurrence_rule(
    rule_data: RecurrenceRuleCreate,
    service: RuleService,
) -> RecurrenceRule:
    """Create a new recurrence rule."""
    try:
        return await service.create_rule(**rule_data.model_dump())
    except BizdeskError as e:
        raise http_error(e) from e


@router.get("", response_model=list[RecurrenceRuleResponse])
async def list_recurrence_rules(
    service: RuleService,
    owner_id: UUID | None = Query(None, description="Only rules of this project or client"),
    target_type: str | None = Query(None, pattern="^(task|invoice)$"),
    active_only: bool = Query(True, description="Only return active rules"),
) -> list[RecurrenceRule]:
    """List recurrence rules."""
    rules = await service.list_rules(
        owner_id=owner_id, target_type=target_type, active_only=active_only
    )
    return list(rules)


@router.get("/{rule_id}", response_model=RecurrenceRuleResponse)
async def get_recurrence_rule(rule_id: UUID, service: RuleService) -> RecurrenceRule:
    """Get a specific recurrence rule."""
    return await _get_rule_or_404(service, rule_id)


@router.patch("/{rule_id}", response_model=RecurrenceRuleResponse)
async def update_recurrence_rule(
    rule_id: UUID,
    updates: RecurrenceRuleUpdate,
    service: RuleService,
    now: Clock,
) -> RecurrenceRule:
    """Update a recurrence rule.

    Reactivating a rule or changing its schedule recomputes the next due
    date from today unless ``next_due_at`` is sent explicitly.
    """
    update_data = updates.model_dump(exclude_unset=True)
    try:
        return await service.update_rule(rule_id, update_data, today=now.date())
    except BizdeskError as e:
        raise http_error(e) from e


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_recurrence_rule(rule_id: UUID, service: RuleService) -> None:
    """Delete a recurrence rule. Instances it already generated are kept."""
    if not await service.delete_rule(rule_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Recurrence rule not found",
        )


@router.get("/{rule_id}/preview", response_model=PreviewResponse)
async def preview_recurrence_rule(
    rule_id: UUID,
    service: RuleService,
    count: int = Query(5, ge=1, le=MAX_PREVIEW_OCCURRENCES),
) -> PreviewResponse:
    """Show the rule's next ``count`` due dates without generating anything."""
    rule = await _get_rule_or_404(service, rule_id)
    try:
        occurrences = upcoming_occurrences(rule, count)
    except BizdeskError as e:
        raise http_error(e) from e
    return PreviewResponse(rule_id=rule.id, occurrences=occurrences)


@router.post("/{rule_id}/trigger", response_model=TriggerResponse)
async def trigger_recurrence_rule(
    rule_id: UUID,
    coordinator: Coordinator,
    now: Clock,
) -> TriggerResponse:
    """Generate the rule's pending occurrence now."""
    try:
        outcome = await coordinator.trigger_rule(rule_id, now)
    except BizdeskError as e:
        raise http_error(e) from e

    logger.info("recurrence_rule_triggered", rule_id=str(rule_id), outcome=outcome.kind.value)
    return outcome_response(outcome)
