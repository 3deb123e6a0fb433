"""Email job handler."""

from __future__ import annotations

import logging

from app.db.enums import NotificationChannel, NotificationStatus
from app.jobs.utils import mask_email
from app.services import resend_email_service, webhook_service

logger = logging.getLogger(__name__)


async def process_send_email(db, job) -> None:
    """
    Deliver a queued email through Resend.

    Payload:
        - to, subject, html: the rendered message
        - event_type: what triggered it (task_assigned, step_reminder, ...)
        - flow_run_id / step_execution_id: optional context for notification_log
    """
    payload = job.payload or {}
    to = payload.get("to")
    if not to or not payload.get("subject"):
        raise Exception("Missing to or subject in email job payload")

    log_fields = {
        "org_id": job.organization_id,
        "event_type": payload.get("event_type") or "email",
        "recipient": to,
        "channel": NotificationChannel.EMAIL,
        "flow_run_id": payload.get("flow_run_id"),
        "step_execution_id": payload.get("step_execution_id"),
    }
    try:
        message_id = await resend_email_service.send_email(
            to=to,
            subject=payload["subject"],
            html=payload.get("html") or "",
            idempotency_key=job.idempotency_key or f"job:{job.id}",
        )
    except resend_email_service.EmailSendError as exc:
        webhook_service.record_delivery(
            db, status=NotificationStatus.FAILED, error_message=str(exc), **log_fields
        )
        db.commit()
        raise

    webhook_service.record_delivery(
        db,
        status=NotificationStatus.SENT if message_id else NotificationStatus.SKIPPED,
        **log_fields,
    )
    db.commit()
    logger.info("Email job %s delivered to %s", job.id, mask_email(to))
