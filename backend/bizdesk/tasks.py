"""Celery background tasks."""

import asyncio
from datetime import datetime, timezone
from uuid import UUID

import structlog

from bizdesk.worker import celery_app

logger = structlog.get_logger()

# Subject lines per reminder type, for the mail transport
REMINDER_SUBJECTS = {
    "upcoming": "Invoice {number} is due soon",
    "due": "Invoice {number} is due today",
    "overdue": "Invoice {number} is overdue",
    "final": "Final notice: invoice {number}",
}


@celery_app.task(bind=True, name="bizdesk.tasks.process_recurrence_rules")
def process_recurrence_rules(self, owner_id: str | None = None) -> dict:
    """
    Generate every task and invoice whose recurrence rule is due.

    Scheduled by Celery Beat every ``generation_interval_seconds``. Running
    it twice for the same instant creates nothing the second time.
    """
    async def _process():
        from bizdesk.config import get_settings
        from bizdesk.db.session import worker_session
        from bizdesk.services.generation import GenerationCoordinator
        from bizdesk.services.stores import SqlInstanceStore, SqlRuleStore

        settings = get_settings()
        async with worker_session() as db:
            coordinator = GenerationCoordinator(
                rule_store=SqlRuleStore(db, batch_limit=settings.generation_batch_limit),
                instance_store=SqlInstanceStore(db),
                recent_limit=settings.recent_generations_limit,
            )
            return await coordinator.run(
                datetime.now(timezone.utc),
                owner_id=UUID(owner_id) if owner_id else None,
            )

    try:
        report = asyncio.run(_process())
        logger.info(
            "recurrence_rules_processed",
            created=report.created_count,
            ready=report.ready_for_generation_count,
            errors=len(report.errors),
        )
        return {
            "status": "success",
            "created_count": report.created_count,
            "ready_for_generation_count": report.ready_for_generation_count,
            "deactivated_count": report.deactivated_count,
            "errors": [e.to_dict() for e in report.errors],
        }
    except Exception as e:
        logger.error(
            "recurrence_rules_processing_failed",
            error=str(e),
        )
        return {
            "status": "error",
            "error": str(e),
        }


@celery_app.task(bind=True, name="bizdesk.tasks.send_due_reminders")
def send_due_reminders(self) -> dict:
    """Send every invoice reminder whose escalation slot has arrived."""
    async def _process():
        from bizdesk.config import get_settings
        from bizdesk.db.session import worker_session
        from bizdesk.services.notification import CeleryNotificationSender
        from bizdesk.services.reminders import ReminderPolicy, ReminderService
        from bizdesk.services.stores import SqlInvoiceStore

        settings = get_settings()
        async with worker_session() as db:
            service = ReminderService(
                store=SqlInvoiceStore(db),
                sender=CeleryNotificationSender(celery_app),
                policy=ReminderPolicy.from_settings(settings),
                batch_limit=settings.generation_batch_limit,
            )
            return await service.send_due_reminders(datetime.now(timezone.utc))

    try:
        report = asyncio.run(_process())
        return {
            "status": "success",
            "candidates": report.candidates,
            "sent_count": report.sent_count,
            "errors": [e.to_dict() for e in report.errors],
        }
    except Exception as e:
        logger.error("due_reminders_failed", error=str(e))
        return {
            "status": "error",
            "error": str(e),
        }


@celery_app.task(bind=True, name="bizdesk.tasks.send_notification")
def send_notification(
    self,
    invoice_id: str,
    reminder_type: str,
    recipient: str | None = None,
    invoice_number: str | None = None,
) -> dict:
    """Hand one invoice reminder to the mail transport.

    The transport itself (SMTP relay or provider webhook) is configured per
    deployment and consumes the subject and recipient returned here.
    """
    subject = REMINDER_SUBJECTS.get(reminder_type, REMINDER_SUBJECTS["overdue"]).format(
        number=invoice_number or invoice_id
    )
    logger.info(
        "reminder_notification_accepted",
        invoice_id=invoice_id,
        reminder_type=reminder_type,
        recipient=recipient,
        task_id=self.request.id,
    )
    return {
        "status": "accepted",
        "invoice_id": invoice_id,
        "reminder_type": reminder_type,
        "recipient": recipient,
        "subject": subject,
    }
