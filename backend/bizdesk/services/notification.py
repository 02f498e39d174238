"""Notification senders used by the invoice reminder flow."""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


@dataclass
class NotificationResult:
    """Outcome of a single send attempt."""

    success: bool
    recipient: str | None = None
    message_id: str | None = None
    error: str | None = None


class NotificationSender(Protocol):
    """Delivers a reminder for an outstanding obligation."""

    async def send(
        self,
        obligation: Any,
        reminder_type: str,
        recipient: str | None = None,
    ) -> NotificationResult:
        ...


class CeleryNotificationSender:
    """Sender that hands delivery to the ``send_notification`` worker task.

    A reminder counts as sent once the broker accepted the task; the
    returned ``message_id`` is the Celery task id.
    """

    task_name = "bizdesk.tasks.send_notification"

    def __init__(self, celery_app: Any):
        self.celery_app = celery_app

    async def send(
        self,
        obligation: Any,
        reminder_type: str,
        recipient: str | None = None,
    ) -> NotificationResult:
        recipient = recipient or getattr(obligation, "recipient_email", None)
        try:
            # Publishing talks to the broker synchronously
            async_result = await asyncio.to_thread(
                self.celery_app.send_task,
                self.task_name,
                kwargs={
                    "invoice_id": str(obligation.id),
                    "invoice_number": getattr(obligation, "invoice_number", None),
                    "reminder_type": reminder_type,
                    "recipient": recipient,
                },
            )
        except Exception as e:
            logger.error(
                "reminder_notification_enqueue_failed",
                invoice_id=str(obligation.id),
                error=str(e),
            )
            return NotificationResult(success=False, recipient=recipient, error=str(e))

        logger.info(
            "reminder_notification_enqueued",
            invoice_id=str(obligation.id),
            reminder_type=reminder_type,
            task_id=async_result.id,
        )
        return NotificationResult(success=True, recipient=recipient, message_id=async_result.id)
