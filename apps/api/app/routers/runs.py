"""Runs router - coordinator operations on a flow run.

Called server-to-server by the coordinator app; protected by INTERNAL_SECRET.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.deps import get_db, verify_internal_secret
from app.schemas.flow_run import (
    AuditLogRead,
    CancelRunRequest,
    CompleteStepRequest,
    Envelope,
    FlowRunRead,
)
from app.services import audit_service, flow_run_service, step_engine

router = APIRouter(
    prefix="/api/runs",
    tags=["runs"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.get("/{run_id}", response_model=Envelope[FlowRunRead], response_model_by_alias=True)
def get_run(run_id: str, db: Session = Depends(get_db)):
    return Envelope[FlowRunRead](data=flow_run_service.hydrate_run(db, run_id))


@router.get(
    "/{run_id}/audit",
    response_model=Envelope[list[AuditLogRead]],
    response_model_by_alias=True,
)
def get_run_audit(run_id: str, db: Session = Depends(get_db)):
    """Audit trail for a run, oldest first."""
    flow_run_service.require_run(db, run_id)
    entries = audit_service.list_run_audit(db, run_id)
    return Envelope[list[AuditLogRead]](
        data=[
            AuditLogRead(
                id=e.id,
                flow_run_id=e.flow_run_id,
                action=e.action,
                actor_id=e.actor_id,
                actor_email=e.actor_email,
                details=e.details,
                created_at=e.created_at,
            )
            for e in entries
        ]
    )


@router.post(
    "/{run_id}/steps/{step_execution_id}/complete",
    response_model=Envelope[FlowRunRead],
    response_model_by_alias=True,
)
def complete_step(
    run_id: str,
    step_execution_id: str,
    body: CompleteStepRequest | None = None,
    db: Session = Depends(get_db),
):
    """Complete an active step (branch steps take selectedPathId(s) / outcomeId in resultData)."""
    step_engine.complete_step(
        db,
        step_execution_id,
        result_data=(body.result_data if body else None),
        actor_id="coordinator",
        run_id=run_id,
    )
    return Envelope[FlowRunRead](data=flow_run_service.hydrate_run(db, run_id))


@router.post(
    "/{run_id}/steps/{step_execution_id}/skip",
    response_model=Envelope[FlowRunRead],
    response_model_by_alias=True,
)
def skip_step(run_id: str, step_execution_id: str, db: Session = Depends(get_db)):
    step_engine.skip_step(db, step_execution_id, actor_id="coordinator", run_id=run_id)
    return Envelope[FlowRunRead](data=flow_run_service.hydrate_run(db, run_id))


@router.post(
    "/{run_id}/cancel",
    response_model=Envelope[FlowRunRead],
    response_model_by_alias=True,
)
def cancel_run(
    run_id: str,
    body: CancelRunRequest | None = None,
    db: Session = Depends(get_db),
):
    step_engine.cancel_run(
        db, run_id, actor_id="coordinator", reason=(body.reason if body else None)
    )
    return Envelope[FlowRunRead](data=flow_run_service.hydrate_run(db, run_id))
