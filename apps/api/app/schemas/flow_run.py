"""Pydantic schemas for flow runs, step executions and the webhook trigger API.

Wire format is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Envelope(BaseModel, Generic[T]):
    """``{"success": true, "data": ...}`` wrapper used by every route."""
    success: bool = True
    data: T


class ErrorBody(BaseModel):
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


# =============================================================================
# Requests
# =============================================================================


class StartFlowRequest(CamelModel):
    """Body of POST /api/webhooks/flows/{flowId}/start. Every field is optional."""
    name: str | None = Field(None, max_length=255)
    role_assignments: dict[str, Any] | None = None
    kickoff_data: dict[str, Any] | None = None
    callback_url: str | None = Field(None, max_length=2000)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip() or None


class CompleteStepRequest(CamelModel):
    result_data: dict[str, Any] | None = None


class CancelRunRequest(CamelModel):
    reason: str | None = Field(None, max_length=1000)


# =============================================================================
# Responses
# =============================================================================


class FlowRef(CamelModel):
    id: str
    name: str


class UserRef(CamelModel):
    id: str
    name: str
    email: str


class ContactRef(CamelModel):
    id: str
    name: str
    email: str


class MilestoneRead(CamelModel):
    id: str | None = None
    name: str
    after_step_id: str | None = None


class StepExecutionRead(CamelModel):
    id: str
    step_id: str
    step_index: int
    step_name: str
    step_type: str
    branch_path: str | None
    milestone: str | None = None
    status: str
    iteration: int
    assigned_to_user_id: str | None
    assigned_to_contact_id: str | None
    assigned_to_contact: ContactRef | None = None
    result_data: dict[str, Any] | None
    started_at: datetime | None
    completed_at: datetime | None
    completed_by_id: str | None
    due_at: datetime | None
    reminder_count: int
    escalated_at: datetime | None


class FlowRunRead(CamelModel):
    """Hydrated run: columns plus flow, starter, step rows and milestones."""
    id: str
    flow_id: str
    name: str
    status: str
    is_sample: bool
    current_step_index: int
    started_by_id: str
    organization_id: str
    role_assignments: dict[str, Any]
    kickoff_data: dict[str, Any] | None
    started_at: datetime
    completed_at: datetime | None
    due_at: datetime | None
    last_activity_at: datetime | None
    flow: FlowRef
    started_by: UserRef
    step_executions: list[StepExecutionRead]
    milestones: list[MilestoneRead]


class WebhookSchemaRead(CamelModel):
    flow_id: str
    flow_name: str
    assignee_placeholders: list[Any]
    kickoff_fields: list[Any]


class AuditLogRead(CamelModel):
    id: str
    flow_run_id: str | None
    action: str
    actor_id: str | None
    actor_email: str | None
    details: dict[str, Any] | None
    created_at: datetime


class TaskRead(CamelModel):
    """What an assignee sees through a magic link."""
    step_execution_id: str
    flow_run_id: str
    flow_name: str
    run_name: str
    step_id: str
    step_name: str
    step_description: str | None
    step_type: str
    status: str
    contact_name: str | None
    due_at: datetime | None
    expires_at: datetime
    form_fields: list[dict] = []
