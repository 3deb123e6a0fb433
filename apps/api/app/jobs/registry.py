"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from app.db.enums import JobType
from app.jobs.handlers import email, reminders, webhooks

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.SEND_EMAIL.value: email.process_send_email,
    JobType.STEP_REMINDER.value: reminders.process_step_reminder,
    JobType.STEP_OVERDUE_CHECK.value: reminders.process_step_overdue_check,
    JobType.STEP_ESCALATION.value: reminders.process_step_escalation,
    JobType.WEBHOOK_DELIVERY.value: webhooks.process_webhook_delivery,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
