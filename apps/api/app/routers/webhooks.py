"""Webhooks router - start flow runs from external systems."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.deps import get_db
from app.core.rate_limit import WEBHOOK_START_LIMIT, limiter
from app.schemas.flow_run import Envelope, FlowRunRead, StartFlowRequest, WebhookSchemaRead
from app.services import flow_run_service, flow_service

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/flows/{flow_id}/start",
    status_code=201,
    response_model=Envelope[FlowRunRead],
    response_model_by_alias=True,
)
@limiter.limit(WEBHOOK_START_LIMIT)
def start_flow(
    request: Request,
    flow_id: str,
    body: StartFlowRequest | None = None,
    db: Session = Depends(get_db),
):
    """
    Start a run of a flow.

    Body (all optional): name, roleAssignments {roleName: contactId},
    kickoffData, callbackUrl. Returns the hydrated run.
    """
    body = body or StartFlowRequest()
    run = flow_run_service.start_run(
        db,
        flow_id,
        name=body.name,
        role_assignments=body.role_assignments,
        kickoff_data=body.kickoff_data,
        callback_url=body.callback_url,
    )
    return Envelope[FlowRunRead](data=run)


@router.get(
    "/flows/{flow_id}/schema",
    response_model=Envelope[WebhookSchemaRead],
    response_model_by_alias=True,
)
def get_flow_schema(flow_id: str, db: Session = Depends(get_db)):
    """Describe the roles and kickoff fields a start request may carry."""
    schema = flow_service.get_webhook_schema(db, flow_id)
    return Envelope[WebhookSchemaRead](data=WebhookSchemaRead.model_validate(schema))
