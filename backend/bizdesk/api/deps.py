"""Shared API dependencies."""

from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizdesk.config import get_settings
from bizdesk.db.session import get_db_session
from bizdesk.exceptions import BizdeskError
from bizdesk.services.generation import GenerationCoordinator
from bizdesk.services.notification import CeleryNotificationSender
from bizdesk.services.recurrence_rules import RecurrenceRuleService
from bizdesk.services.reminders import ReminderPolicy, ReminderService
from bizdesk.services.stores import SqlInstanceStore, SqlInvoiceStore, SqlRuleStore
from bizdesk.worker import celery_app

# Error code -> HTTP status for engine errors surfaced through the API
ERROR_STATUS = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "RULE_INVALID": status.HTTP_400_BAD_REQUEST,
    "REMINDER_NOT_ALLOWED": status.HTTP_400_BAD_REQUEST,
    "CALCULATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INSTANCE_EXISTS": status.HTTP_409_CONFLICT,
    "PERSISTENCE_ERROR": status.HTTP_409_CONFLICT,
    "NOTIFICATION_FAILED": status.HTTP_502_BAD_GATEWAY,
    "STORE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_error(exc: BizdeskError) -> HTTPException:
    """Translate an engine error into an HTTP error response."""
    return HTTPException(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"code": exc.code, "message": exc.message},
    )


def get_clock() -> datetime:
    """Current time for the request; overridden in tests."""
    return datetime.now(timezone.utc)


def get_generation_coordinator(
    db: AsyncSession = Depends(get_db_session),
) -> GenerationCoordinator:
    settings = get_settings()
    return GenerationCoordinator(
        rule_store=SqlRuleStore(db, batch_limit=settings.generation_batch_limit),
        instance_store=SqlInstanceStore(db),
        recent_limit=settings.recent_generations_limit,
    )


def get_reminder_service(
    db: AsyncSession = Depends(get_db_session),
) -> ReminderService:
    settings = get_settings()
    return ReminderService(
        store=SqlInvoiceStore(db),
        sender=CeleryNotificationSender(celery_app),
        policy=ReminderPolicy.from_settings(settings),
    )


def get_rule_service(
    db: AsyncSession = Depends(get_db_session),
) -> RecurrenceRuleService:
    return RecurrenceRuleService(db)


Clock = Annotated[datetime, Depends(get_clock)]
Coordinator = Annotated[GenerationCoordinator, Depends(get_generation_coordinator)]
Reminders = Annotated[ReminderService, Depends(get_reminder_service)]
RuleService = Annotated[RecurrenceRuleService, Depends(get_rule_service)]
