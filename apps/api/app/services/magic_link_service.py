"""Magic links - tokenized, expiring access to a single step for a contact."""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session, joinedload

from app.core.config import settings
from app.core.errors import (
    FlowNotFoundError,
    FlowValidationError,
    InvalidStateError,
    LinkExpiredError,
)
from app.db.enums import StepExecutionStatus, StepType
from app.db.models import FlowRun, MagicLink, StepExecution
from app.db.types import utcnow
from app.services import flow_service

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass
class TaskContext:
    """What an assignee sees when opening a magic link."""

    token: str
    step_execution_id: str
    flow_run_id: str
    flow_name: str
    run_name: str
    run_status: str
    step_id: str
    step_name: str
    step_description: str | None
    step_type: str
    step_status: str
    contact_name: str | None
    contact_email: str | None
    expires_at: datetime
    expired: bool
    completed: bool
    form_fields: list[dict] = field(default_factory=list)
    due_at: datetime | None = None


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def create_magic_link(
    db: Session,
    step_execution_id: str,
    expires_in_hours: int | None = None,
    now: datetime | None = None,
) -> str:
    """Create a link for a step execution and return its token. Does not commit."""
    hours = expires_in_hours if expires_in_hours is not None else settings.MAGIC_LINK_EXPIRES_HOURS
    link = MagicLink(
        token=generate_token(),
        step_execution_id=step_execution_id,
        expires_at=(now or utcnow()) + timedelta(hours=hours),
    )
    db.add(link)
    db.flush()
    return link.token


def get_link(db: Session, token: str) -> MagicLink | None:
    return (
        db.query(MagicLink)
        .options(
            joinedload(MagicLink.step_execution)
            .joinedload(StepExecution.flow_run)
            .joinedload(FlowRun.flow)
        )
        .filter(MagicLink.token == token)
        .first()
    )


def validate_magic_link(db: Session, token: str, now: datetime | None = None) -> TaskContext | None:
    """
    Resolve a token to its task context.

    Returns None for unknown tokens. Expired or already-completed links still
    return a context (with ``expired`` / ``completed`` set) so callers can
    show the right message.
    """
    link = get_link(db, token)
    if not link:
        return None

    step_execution = link.step_execution
    run = step_execution.flow_run
    flow = run.flow

    step = None
    try:
        step = flow_service.get_definition(flow).find_step(step_execution.step_id)
    except FlowValidationError:
        logger.warning("Stored definition for flow %s no longer parses", flow.id)

    contact = step_execution.assigned_contact
    now = now or utcnow()
    return TaskContext(
        token=token,
        step_execution_id=step_execution.id,
        flow_run_id=run.id,
        flow_name=flow.name,
        run_name=run.name,
        run_status=run.status,
        step_id=step_execution.step_id,
        step_name=step.display_name if step else "Task",
        step_description=step.description if step else None,
        step_type=step.type if step else StepType.TODO.value,
        step_status=step_execution.status,
        contact_name=contact.name if contact else None,
        contact_email=contact.email if contact else None,
        expires_at=link.expires_at,
        expired=link.expires_at <= now,
        completed=step_execution.status == StepExecutionStatus.COMPLETED.value
        or link.used_at is not None,
        form_fields=list(step.form_fields) if step else [],
        due_at=step_execution.due_at,
    )


def mark_used(db: Session, link: MagicLink, now: datetime | None = None) -> None:
    link.used_at = now or utcnow()
    db.flush()


def require_active_task(db: Session, token: str, now: datetime | None = None) -> TaskContext:
    """
    Resolve a token that may still be acted on.

    Raises:
        FlowNotFoundError: Unknown token.
        LinkExpiredError: Link past its expiry.
    """
    context = validate_magic_link(db, token, now=now)
    if context is None:
        raise FlowNotFoundError("Task not found")
    if context.expired:
        raise LinkExpiredError("This task link has expired")
    return context


def complete_task(
    db: Session,
    token: str,
    result_data: dict | None = None,
    now: datetime | None = None,
) -> TaskContext:
    """
    Complete the step behind a magic link on behalf of its contact.

    Raises:
        FlowNotFoundError: Unknown token.
        LinkExpiredError: Link past its expiry.
        InvalidStateError: Step already completed or no longer active.
    """
    from app.services import step_engine

    now = now or utcnow()
    context = require_active_task(db, token, now=now)
    if context.completed:
        raise InvalidStateError("This task has already been completed")

    link = get_link(db, token)
    step_engine.complete_step(
        db,
        context.step_execution_id,
        result_data=result_data,
        actor_id=link.step_execution.assigned_to_contact_id,
        actor_email=context.contact_email,
        now=now,
    )
    mark_used(db, link, now=now)
    db.commit()
    logger.info("Task completed via magic link for step %s", context.step_id)
    return validate_magic_link(db, token, now=now)
