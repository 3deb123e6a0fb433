"""Public task router - assignees act on a step through their magic link.

No account required; the token is the credential.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.rate_limit import PUBLIC_TASK_LIMIT, limiter
from app.schemas.flow_run import CompleteStepRequest, Envelope, TaskRead
from app.services import magic_link_service
from app.services.magic_link_service import TaskContext

router = APIRouter(prefix="/api/public/task", tags=["public"])


def _task_read(context: TaskContext) -> TaskRead:
    return TaskRead(
        step_execution_id=context.step_execution_id,
        flow_run_id=context.flow_run_id,
        flow_name=context.flow_name,
        run_name=context.run_name,
        step_id=context.step_id,
        step_name=context.step_name,
        step_description=context.step_description,
        step_type=context.step_type,
        status=context.step_status,
        contact_name=context.contact_name,
        due_at=context.due_at,
        expires_at=context.expires_at,
        form_fields=context.form_fields,
    )


@router.get("/{token}", response_model=Envelope[TaskRead], response_model_by_alias=True)
@limiter.limit(PUBLIC_TASK_LIMIT)
def get_task(request: Request, token: str, db: Session = Depends(get_db)):
    context = magic_link_service.require_active_task(db, token)
    return Envelope[TaskRead](data=_task_read(context))


@router.post(
    "/{token}/complete",
    response_model=Envelope[TaskRead],
    response_model_by_alias=True,
)
@limiter.limit(PUBLIC_TASK_LIMIT)
def complete_task(
    request: Request,
    token: str,
    body: CompleteStepRequest | None = None,
    db: Session = Depends(get_db),
):
    context = magic_link_service.complete_task(
        db, token, result_data=(body.result_data if body else None)
    )
    return Envelope[TaskRead](data=_task_read(context))
