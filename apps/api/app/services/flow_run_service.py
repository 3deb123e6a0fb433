"""Flow run service - start runs from a flow and read them back hydrated."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from app.core.errors import FlowNotFoundError, FlowValidationError
from app.core.structured_logging import build_log_context
from app.db.enums import AuditAction, FlowRunStatus, StepExecutionStatus, StepType, WebhookEvent
from app.db.models import Flow, FlowRun, StepExecution, User
from app.db.types import utcnow
from app.schemas.flow_definition import FlowDefinition
from app.schemas.flow_run import (
    ContactRef,
    FlowRef,
    FlowRunRead,
    MilestoneRead,
    StepExecutionRead,
    UserRef,
)
from app.services import (
    audit_service,
    bootstrap_service,
    execution_service,
    flow_service,
    role_resolver,
    step_engine,
    webhook_service,
)
from app.services.flow_graph import FlowGraph

logger = logging.getLogger(__name__)


def default_run_name(flow: Flow, now: datetime) -> str:
    return f"{flow.name} - Webhook {now.strftime('%Y-%m-%d')}"


def _attribution(db: Session, flow: Flow) -> tuple[str, str]:
    """
    Organization and starting user for a run on ``flow``.

    Unowned flows fall back to the seeded defaults (see bootstrap_service).

    Raises:
        FlowValidationError: No owner and no seeded defaults.
    """
    org_id = flow.organization_id
    user_id = flow.created_by_id
    if org_id is None and user_id is not None:
        creator = db.get(User, user_id)
        org_id = creator.active_organization_id if creator else None
    if org_id and user_id:
        return org_id, user_id

    defaults = bootstrap_service.get_defaults(db)
    if defaults is None:
        raise FlowValidationError(
            "Flow has no owner and no default organization is configured"
        )
    return org_id or defaults.organization.id, user_id or defaults.user.id


def start_run(
    db: Session,
    flow_id: str,
    name: str | None = None,
    role_assignments: dict[str, Any] | None = None,
    kickoff_data: dict[str, Any] | None = None,
    callback_url: str | None = None,
    now: datetime | None = None,
) -> FlowRunRead:
    """
    Start a run of a flow (webhook trigger).

    The run and one row per top-level step are committed together. The
    first step's activation, the activity stamp, the ``flow.started``
    webhook and the audit record follow in that order and are committed
    separately; they are not rolled back if a later one fails.

    Raises:
        FlowNotFoundError: Unknown flow (nothing written).
        FlowValidationError: Empty or malformed definition (nothing written).
    """
    now = now or utcnow()
    flow = flow_service.require_flow(db, flow_id)
    definition = flow_service.get_definition(flow)
    if not definition.steps:
        raise FlowValidationError("Flow has no steps defined")

    org_id, user_id = _attribution(db, flow)
    assignments = role_resolver.resolve_role_assignments(definition, role_assignments)
    assignments = role_resolver.filter_existing_contacts(db, org_id, assignments)

    data = dict(kickoff_data or {})
    if callback_url:
        data["_callbackUrl"] = callback_url

    run = FlowRun(
        flow_id=flow.id,
        name=name or default_run_name(flow, now),
        status=FlowRunStatus.IN_PROGRESS.value,
        current_step_index=0,
        started_by_id=user_id,
        organization_id=org_id,
        role_assignments=assignments,
        kickoff_data=data,
        started_at=now,
        due_at=execution_service.compute_flow_due_at(definition.due_dates.flow_due, now),
    )
    try:
        db.add(run)
        db.flush()
        for index, step in enumerate(definition.steps):
            first = index == 0
            contact_id, assigned_user_id = role_resolver.resolve_step_assignee(
                step, assignments, user_id
            )
            db.add(
                StepExecution(
                    flow_run_id=run.id,
                    step_id=step.step_id,
                    step_index=index,
                    status=(
                        StepExecutionStatus.IN_PROGRESS.value
                        if first
                        else StepExecutionStatus.PENDING.value
                    ),
                    started_at=now if first else None,
                    assigned_to_contact_id=contact_id,
                    assigned_to_user_id=assigned_user_id,
                )
            )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    db.refresh(run)

    log_extra = build_log_context(run_id=run.id, flow_id=flow.id, org_id=org_id)
    logger.info("Started run of flow %s", flow.id, extra=log_extra)

    step_engine.activate_first_step(db, run, now=now)
    db.commit()

    execution_service.update_flow_activity(db, run, now)
    db.commit()

    webhook_service.dispatch(db, WebhookEvent.FLOW_STARTED, run, definition)
    db.commit()

    audit_service.log_action(
        db,
        run.id,
        AuditAction.WEBHOOK_FLOW_STARTED,
        details={
            "flowId": flow.id,
            "flowName": flow.name,
            "runName": run.name,
            "callbackUrl": callback_url,
        },
        actor_id=user_id,
    )
    db.commit()

    return hydrate_run(db, run.id)


def get_run(db: Session, run_id: str) -> FlowRun | None:
    return (
        db.query(FlowRun)
        .options(
            joinedload(FlowRun.flow),
            joinedload(FlowRun.started_by),
        )
        .filter(FlowRun.id == run_id)
        .first()
    )


def require_run(db: Session, run_id: str) -> FlowRun:
    run = get_run(db, run_id)
    if run is None:
        raise FlowNotFoundError("Flow run not found")
    return run


def _ordered_rows(run: FlowRun) -> list[StepExecution]:
    """Main path first by index, then nested rows grouped by path."""
    return sorted(
        run.step_executions,
        key=lambda row: (
            row.branch_path is not None,
            row.branch_path or "",
            row.step_index,
        ),
    )


def _definition_or_none(flow: Flow) -> FlowDefinition | None:
    try:
        return flow_service.get_definition(flow)
    except FlowValidationError:
        logger.warning("Stored definition for flow %s no longer parses", flow.id)
        return None


def hydrate_run(db: Session, run_id: str) -> FlowRunRead:
    """
    Read a run back with its flow, starter, steps and milestones.

    Raises:
        FlowNotFoundError: Unknown run.
    """
    run = require_run(db, run_id)
    definition = _definition_or_none(run.flow)
    graph = FlowGraph(definition) if definition else None
    milestone_of = graph.milestone_map() if graph else {}

    steps = []
    for row in _ordered_rows(run):
        step = definition.find_step(row.step_id) if definition else None
        contact = row.assigned_contact
        steps.append(
            StepExecutionRead(
                id=row.id,
                step_id=row.step_id,
                step_index=row.step_index,
                step_name=step.display_name if step else "Task",
                step_type=step.type if step else StepType.TODO.value,
                branch_path=row.branch_path,
                milestone=milestone_of.get(row.step_id),
                status=row.status,
                iteration=row.iteration,
                assigned_to_user_id=row.assigned_to_user_id,
                assigned_to_contact_id=row.assigned_to_contact_id,
                assigned_to_contact=(
                    ContactRef(id=contact.id, name=contact.name, email=contact.email)
                    if contact
                    else None
                ),
                result_data=row.result_data,
                started_at=row.started_at,
                completed_at=row.completed_at,
                completed_by_id=row.completed_by_id,
                due_at=row.due_at,
                reminder_count=row.reminder_count,
                escalated_at=row.escalated_at,
            )
        )

    milestones = [
        MilestoneRead(id=m.milestone_id, name=m.name, after_step_id=m.after_step_id)
        for m in (definition.milestones if definition else [])
    ]

    return FlowRunRead(
        id=run.id,
        flow_id=run.flow_id,
        name=run.name,
        status=run.status,
        is_sample=run.is_sample,
        current_step_index=run.current_step_index,
        started_by_id=run.started_by_id,
        organization_id=run.organization_id,
        role_assignments=run.role_assignments or {},
        kickoff_data=run.kickoff_data,
        started_at=run.started_at,
        completed_at=run.completed_at,
        due_at=run.due_at,
        last_activity_at=run.last_activity_at,
        flow=FlowRef(id=run.flow.id, name=run.flow.name),
        started_by=UserRef(
            id=run.started_by.id, name=run.started_by.name, email=run.started_by.email
        ),
        step_executions=steps,
        milestones=milestones,
    )
