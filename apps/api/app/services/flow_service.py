"""Flow lookup and definition access."""

from sqlalchemy.orm import Session

from app.core.errors import FlowNotFoundError
from app.db.enums import FlowStatus
from app.db.models import Flow
from app.schemas.flow_definition import FlowDefinition, parse_definition


def get_flow(db: Session, flow_id: str) -> Flow | None:
    return db.query(Flow).filter(Flow.id == flow_id).first()


def require_flow(db: Session, flow_id: str) -> Flow:
    """Get a flow or raise FlowNotFoundError."""
    flow = get_flow(db, flow_id)
    if not flow:
        raise FlowNotFoundError("Flow not found")
    return flow


def get_definition(flow: Flow) -> FlowDefinition:
    """Parse the flow's stored definition (raises FlowValidationError)."""
    return parse_definition(flow.definition or {})


def get_webhook_schema(db: Session, flow_id: str) -> dict:
    """
    Describe what a webhook caller may send to start this flow.

    Read-only; identical output for identical stored state.
    """
    flow = require_flow(db, flow_id)
    raw = flow.definition or {}
    placeholders = raw.get("assigneePlaceholders") or []
    kickoff = raw.get("kickoff")
    if isinstance(kickoff, dict):
        fields = kickoff.get("fields")
    else:
        # Legacy definitions keep kickoff fields at the top level
        fields = raw.get("kickoffFields")
    return {
        "flowId": flow.id,
        "flowName": flow.name,
        "assigneePlaceholders": placeholders,
        "kickoffFields": fields if isinstance(fields, list) else [],
    }


def create_flow(
    db: Session,
    *,
    name: str,
    definition: dict,
    org_id: str | None = None,
    created_by_id: str | None = None,
    description: str | None = None,
    status: FlowStatus = FlowStatus.PUBLISHED,
) -> Flow:
    """Store a flow after validating its definition. Does not commit."""
    parse_definition(definition)
    flow = Flow(
        name=name,
        description=description,
        definition=definition,
        organization_id=org_id,
        created_by_id=created_by_id,
        status=status.value,
    )
    db.add(flow)
    db.flush()
    return flow
