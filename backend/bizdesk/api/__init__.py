"""API router package."""

from fastapi import APIRouter

from bizdesk.api.v1 import generation, health, recurrence_rules, reminders

router = APIRouter()

# Include all API routers
router.include_router(health.router, tags=["Health"])
router.include_router(recurrence_rules.router, prefix="/recurrence-rules", tags=["Recurrence Rules"])
router.include_router(generation.router, prefix="/generation", tags=["Generation"])
router.include_router(reminders.router, prefix="/invoices", tags=["Invoice Reminders"])
