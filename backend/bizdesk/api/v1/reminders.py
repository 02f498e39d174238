"""Invoice reminder endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel, EmailStr, Field

from bizdesk.api.deps import Clock, Reminders, http_error
from bizdesk.exceptions import BizdeskError

router = APIRouter()


class ReminderSend(BaseModel):
    """Send a reminder now."""

    reminder_type: str = Field(default="overdue", pattern="^(upcoming|due|overdue|final)$")
    to: EmailStr | None = None


class ReminderResponse(BaseModel):
    id: UUID
    invoice_id: UUID
    sent_at: datetime
    sent_to: str | None
    reminder_type: str
    days_overdue: int
    status: str

    class Config:
        from_attributes = True


class ReminderStatusResponse(BaseModel):
    """Reminder state of an invoice."""

    invoice_id: UUID
    reminders_sent: int
    days_overdue: int
    next_reminder_at: datetime | None
    can_send_reminder: bool
    history: list[ReminderResponse]


@router.get("/{invoice_id}/reminders", response_model=ReminderStatusResponse)
async def get_invoice_reminders(
    invoice_id: UUID,
    service: Reminders,
    now: Clock,
) -> ReminderStatusResponse:
    """Reminder status and history of an invoice."""
    try:
        reminder_status, history = await service.get_status(invoice_id, now)
    except BizdeskError as e:
        raise http_error(e) from e

    return ReminderStatusResponse(
        invoice_id=invoice_id,
        reminders_sent=reminder_status.reminders_sent,
        days_overdue=reminder_status.days_overdue,
        next_reminder_at=reminder_status.next_reminder_at,
        can_send_reminder=reminder_status.can_send_reminder,
        history=[ReminderResponse.model_validate(r) for r in history],
    )


@router.post(
    "/{invoice_id}/reminders",
    response_model=ReminderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_invoice_reminder(
    invoice_id: UUID,
    service: Reminders,
    now: Clock,
    data: ReminderSend | None = None,
):
    """Send a reminder for an outstanding invoice now."""
    data = data or ReminderSend()
    try:
        return await service.send_reminder(
            invoice_id, now, reminder_type=data.reminder_type, to=data.to
        )
    except BizdeskError as e:
        raise http_error(e) from e
