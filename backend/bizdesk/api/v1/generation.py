"""Generation trigger and status endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query
from pydantic import BaseModel

from bizdesk.api.deps import Clock, Coordinator, http_error
from bizdesk.api.v1.recurrence_rules import GeneratedInstanceResponse, RuleErrorResponse
from bizdesk.exceptions import StoreUnavailableError

router = APIRouter()


class GenerationRunResponse(BaseModel):
    """Result of one generation batch."""

    created_count: int
    created: list[GeneratedInstanceResponse]
    ready_for_generation_count: int
    errors: list[RuleErrorResponse]


class GenerationStatusResponse(BaseModel):
    ready_for_generation_count: int
    recent_generations: list[GeneratedInstanceResponse]


@router.post("/run", response_model=GenerationRunResponse)
async def run_generation(
    coordinator: Coordinator,
    now: Clock,
    owner_id: UUID | None = Query(None, description="Limit the batch to one project or client"),
) -> GenerationRunResponse:
    """Generate every instance that is due now."""
    try:
        report = await coordinator.run(now, owner_id=owner_id)
    except StoreUnavailableError as e:
        raise http_error(e) from e

    return GenerationRunResponse(
        created_count=report.created_count,
        created=[GeneratedInstanceResponse.model_validate(i) for i in report.created],
        ready_for_generation_count=report.ready_for_generation_count,
        errors=[RuleErrorResponse.model_validate(e) for e in report.errors],
    )


@router.get("/status", response_model=GenerationStatusResponse)
async def generation_status(
    coordinator: Coordinator,
    now: Clock,
    owner_id: UUID | None = Query(None),
) -> GenerationStatusResponse:
    """How many rules are ready to generate, and what was generated last."""
    try:
        result = await coordinator.status(now, owner_id=owner_id)
    except StoreUnavailableError as e:
        raise http_error(e) from e

    return GenerationStatusResponse(
        ready_for_generation_count=result.ready_for_generation_count,
        recent_generations=[
            GeneratedInstanceResponse.model_validate(i) for i in result.recent_generations
        ],
    )
