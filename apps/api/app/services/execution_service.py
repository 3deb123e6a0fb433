"""Step timing: due dates and the reminder/overdue/escalation jobs derived from them.

When a step becomes IN_PROGRESS its due date is computed from the step's
``due`` config and stored on the row, then up to three jobs are registered:

- STEP_REMINDER at due - reminder_hours_before (only if still in the future)
- STEP_OVERDUE_CHECK at due
- STEP_ESCALATION at due + escalation_hours_after (to the coordinator)

Jobs are keyed ``"<type>:<stepExecutionId>:<iteration>"`` so re-activation of
the same row in a later iteration schedules fresh jobs.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.core.structured_logging import build_log_context
from app.db.enums import DueMode, DueUnit, JobType
from app.db.models import FlowRun, Job, StepExecution
from app.db.types import utcnow
from app.schemas.flow_definition import BaseStep, DueConfig, FlowDefinition, NotificationPolicy
from app.services import job_service

logger = logging.getLogger(__name__)

_UNIT_HOURS = {
    DueUnit.HOURS: 1,
    DueUnit.DAYS: 24,
    DueUnit.WEEKS: 24 * 7,
}


def due_delta(value: float, unit: DueUnit) -> timedelta:
    return timedelta(hours=value * _UNIT_HOURS.get(unit, 1))


def compute_step_due_at(
    due: DueConfig | None,
    started_at: datetime,
    flow_due_at: datetime | None = None,
) -> datetime | None:
    """Due date for a step starting at ``started_at``.

    RELATIVE (and the legacy untyped form) counts from the start,
    FIXED is absolute, BEFORE_FLOW_DUE counts back from the run deadline
    and is None when the run has no deadline.
    """
    if due is None:
        return None
    if due.type is None or due.type == DueMode.RELATIVE:
        return started_at + due_delta(due.value, due.unit)
    if due.type == DueMode.FIXED:
        return due.date
    if due.type == DueMode.BEFORE_FLOW_DUE:
        if flow_due_at is None:
            return None
        return flow_due_at - due_delta(due.value, due.unit)
    return None


def compute_flow_due_at(due: DueConfig | None, started_at: datetime) -> datetime | None:
    """Run-level deadline; only RELATIVE and FIXED apply."""
    if due is None or due.type == DueMode.BEFORE_FLOW_DUE:
        return None
    if due.type == DueMode.FIXED:
        return due.date
    return started_at + due_delta(due.value, due.unit)


def notification_policy(definition: FlowDefinition, step: BaseStep) -> NotificationPolicy:
    """Flow-level policy with the step's override applied."""
    policy = definition.settings.notifications
    if step.reminder_override is not None:
        policy = step.reminder_override.apply(policy)
    return policy


def _job_key(job_type: JobType, step_execution: StepExecution) -> str:
    return f"{job_type.value}:{step_execution.id}:{step_execution.iteration}"


def on_step_activated(
    db: Session,
    step_execution: StepExecution,
    step: BaseStep,
    definition: FlowDefinition,
    run: FlowRun,
    now: datetime | None = None,
) -> list[Job]:
    """Store the step's due date and register its timer jobs. Does not commit."""
    now = now or utcnow()
    started_at = step_execution.started_at or now
    due_at = compute_step_due_at(step.due, started_at, run.due_at)
    step_execution.due_at = due_at
    if due_at is None:
        return []

    policy = notification_policy(definition, step)
    payload = {
        "step_execution_id": step_execution.id,
        "flow_run_id": run.id,
        "iteration": step_execution.iteration,
    }
    jobs: list[Job] = []

    def _schedule(job_type: JobType, run_at: datetime) -> None:
        jobs.append(
            job_service.schedule_job(
                db,
                org_id=run.organization_id,
                job_type=job_type,
                payload=dict(payload),
                run_at=run_at,
                idempotency_key=_job_key(job_type, step_execution),
                step_execution_id=step_execution.id,
            )
        )

    if policy.reminder_enabled:
        reminder_at = due_at - timedelta(hours=policy.reminder_hours_before)
        if reminder_at > now:
            _schedule(JobType.STEP_REMINDER, reminder_at)

    if policy.overdue_check:
        _schedule(JobType.STEP_OVERDUE_CHECK, due_at)

    if policy.escalation_hours_after is not None:
        _schedule(
            JobType.STEP_ESCALATION,
            due_at + timedelta(hours=policy.escalation_hours_after),
        )

    logger.info(
        "Scheduled %s timer jobs for step %s",
        len(jobs),
        step_execution.step_id,
        extra=build_log_context(run_id=run.id, step_execution_id=step_execution.id),
    )
    return jobs


def on_step_closed(db: Session, step_execution: StepExecution) -> int:
    """Cancel pending timer jobs once a step is completed, skipped or reset."""
    return job_service.cancel_step_jobs(db, step_execution.id)


def update_flow_activity(db: Session, run: FlowRun, now: datetime | None = None) -> None:
    run.last_activity_at = now or utcnow()
    db.flush()
