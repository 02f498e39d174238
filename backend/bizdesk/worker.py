"""Celery worker configuration."""

from celery import Celery

from bizdesk.config import get_settings

settings = get_settings()

celery_app = Celery(
    "bizdesk",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    task_soft_time_limit=240,  # 4 minutes
)

celery_app.conf.beat_schedule = {
    "process-recurrence-rules": {
        "task": "bizdesk.tasks.process_recurrence_rules",
        "schedule": float(settings.generation_interval_seconds),
    },
    "send-due-reminders": {
        "task": "bizdesk.tasks.send_due_reminders",
        "schedule": float(settings.reminder_scan_interval_seconds),
    },
}

celery_app.autodiscover_tasks(["bizdesk"])
