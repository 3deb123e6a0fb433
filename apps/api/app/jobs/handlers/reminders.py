"""Step timer handlers: reminders, overdue checks and escalations.

Each job carries the step execution id and the iteration it was scheduled
for. A job whose step has moved on (closed, or re-entered in a later
iteration) is a no-op.
"""

from __future__ import annotations

import logging

from app.core.errors import FlowValidationError
from app.core.structured_logging import build_log_context
from app.db.enums import AuditAction, StepExecutionStatus, WebhookEvent
from app.db.models import StepExecution
from app.db.types import utcnow
from app.services import audit_service, email_service, flow_service, webhook_service

logger = logging.getLogger(__name__)


def _load_active_step(db, job) -> StepExecution | None:
    payload = job.payload or {}
    step_execution_id = payload.get("step_execution_id") or job.step_execution_id
    if not step_execution_id:
        raise Exception("Missing step_execution_id in step timer payload")

    row = db.query(StepExecution).filter(StepExecution.id == step_execution_id).first()
    if row is None:
        logger.info("Step execution %s gone, skipping %s", step_execution_id, job.job_type)
        return None
    if row.status != StepExecutionStatus.IN_PROGRESS.value:
        logger.info("Step %s is %s, skipping %s", row.step_id, row.status, job.job_type)
        return None
    iteration = payload.get("iteration")
    if iteration is not None and iteration != row.iteration:
        logger.info("Step %s moved to iteration %s, skipping %s", row.step_id, row.iteration, job.job_type)
        return None
    return row


def _step_name(row: StepExecution) -> str:
    try:
        step = flow_service.get_definition(row.flow_run.flow).find_step(row.step_id)
    except FlowValidationError:
        return "Task"
    return step.display_name if step else "Task"


def _recipient(row: StepExecution) -> tuple[str | None, str]:
    """Assignee email and name; the coordinator when nobody is assigned."""
    if row.assigned_contact is not None:
        return row.assigned_contact.email, row.assigned_contact.name
    user = row.assigned_user or row.flow_run.started_by
    return (user.email, user.name) if user else (None, "")


def _due_text(row: StepExecution) -> str:
    return row.due_at.strftime("%Y-%m-%d %H:%M UTC") if row.due_at else "soon"


async def process_step_reminder(db, job) -> None:
    """Email the assignee that their step is coming due."""
    row = _load_active_step(db, job)
    if row is None:
        return

    run = row.flow_run
    to, name = _recipient(row)
    if to:
        subject, body = email_service.render_template(
            email_service.STEP_REMINDER_SUBJECT,
            email_service.STEP_REMINDER_BODY,
            {
                "recipient_name": name,
                "step_name": _step_name(row),
                "run_name": run.name,
                "due_at": _due_text(row),
            },
        )
        email_service.queue_email(
            db,
            org_id=run.organization_id,
            to=to,
            subject=subject,
            body=body,
            event_type="step_reminder",
            flow_run_id=run.id,
            step_execution_id=row.id,
            idempotency_key=f"reminder-email:{row.id}:{row.iteration}:{row.reminder_count}",
        )

    row.reminder_count += 1
    row.last_reminder_sent_at = utcnow()
    audit_service.log_action(
        db,
        run.id,
        AuditAction.REMINDER_SENT,
        details={"stepId": row.step_id, "reminderCount": row.reminder_count},
        actor_id="system",
    )
    db.commit()
    logger.info(
        "Reminder sent for step %s",
        row.step_id,
        extra=build_log_context(run_id=run.id, step_execution_id=row.id, job_id=job.id),
    )


async def process_step_overdue_check(db, job) -> None:
    """Announce a step that passed its due date while still open."""
    row = _load_active_step(db, job)
    if row is None:
        return
    if row.due_at is None or row.due_at > utcnow():
        logger.info("Step %s not overdue yet, skipping", row.step_id)
        return

    run = row.flow_run
    webhook_service.dispatch(
        db,
        WebhookEvent.STEP_OVERDUE,
        run,
        flow_service.get_definition(run.flow),
        step_execution=row,
        step_name=_step_name(row),
        metadata={"dueAt": row.due_at.isoformat()},
    )
    db.commit()


async def process_step_escalation(db, job) -> None:
    """Tell the coordinator an open step is well past due."""
    row = _load_active_step(db, job)
    if row is None:
        return

    run = row.flow_run
    coordinator = run.started_by
    step_name = _step_name(row)
    if coordinator and coordinator.email:
        subject, body = email_service.render_template(
            email_service.STEP_ESCALATION_SUBJECT,
            email_service.STEP_ESCALATION_BODY,
            {
                "recipient_name": coordinator.name,
                "step_name": step_name,
                "run_name": run.name,
                "due_at": _due_text(row),
            },
        )
        email_service.queue_email(
            db,
            org_id=run.organization_id,
            to=coordinator.email,
            subject=subject,
            body=body,
            event_type="step_escalation",
            flow_run_id=run.id,
            step_execution_id=row.id,
            idempotency_key=f"escalation-email:{row.id}:{row.iteration}",
        )

    row.escalated_at = utcnow()
    audit_service.log_action(
        db,
        run.id,
        AuditAction.STEP_ESCALATED,
        details={"stepId": row.step_id, "coordinatorId": run.started_by_id},
        actor_id="system",
    )
    webhook_service.dispatch(
        db,
        WebhookEvent.STEP_ESCALATED,
        run,
        flow_service.get_definition(run.flow),
        step_execution=row,
        step_name=step_name,
    )
    db.commit()
    logger.info(
        "Escalated step %s to coordinator",
        row.step_id,
        extra=build_log_context(run_id=run.id, step_execution_id=row.id, job_id=job.id),
    )
