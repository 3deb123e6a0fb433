"""Flow definition model.

The stored definition is a loosely shaped JSON document produced by the flow
builder. It is parsed here into one typed model per step kind so the engine
never has to dig through raw dicts:

- ActionStep: human action, completed via magic link or coordinator
- DecisionStep: human picks exactly one outcome
- BranchStep: SINGLE/MULTI choice or PARALLEL fan-out over paths
- GotoStep / GotoDestinationStep: main-path jumps
- TerminateStep: ends the run with a fixed status
- ExternalStep: waits for an outside system (WAIT, SUB_FLOW, automations)

Step ids may be given as ``stepId`` or ``id``; per-step fields may live at
the top level or under ``config``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from app.core.config import settings
from app.core.errors import FlowValidationError
from app.db.enums import (
    BRANCH_STEP_TYPES,
    EXTERNAL_STEP_PREFIXES,
    EXTERNAL_STEP_TYPES,
    DueMode,
    DueUnit,
    StepType,
    TerminateStatus,
)


class DefinitionModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Due dates & notification policy
# =============================================================================


class DueConfig(DefinitionModel):
    """Step or flow deadline. Missing ``type`` is the legacy relative form."""

    type: DueMode | None = None
    value: float = 0
    unit: DueUnit = DueUnit.DAYS
    date: datetime | None = None

    @field_validator("type", "unit", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("date")
    @classmethod
    def _assume_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


def _flatten_alert_settings(data: Any) -> Any:
    """Map the builder's nested alert shape onto flat policy keys.

    ``{assignee: {actionAlerts: {...}}, coordinator: {escalationAlerts: {...}}}``
    (days) becomes ``{reminderEnabled, reminderHoursBefore, overdueCheck,
    escalationHoursAfter}`` (hours). Keys absent from the input stay absent.
    """
    if not isinstance(data, dict):
        return data
    nested_keys = ("assignee", "coordinator", "actionAlerts", "escalationAlerts")
    flat = {k: v for k, v in data.items() if k not in nested_keys}
    action = data.get("actionAlerts") or (data.get("assignee") or {}).get("actionAlerts") or {}
    escalation = (
        data.get("escalationAlerts")
        or (data.get("coordinator") or {}).get("escalationAlerts")
        or {}
    )
    if "dueDateApproaching" in action:
        flat["reminderEnabled"] = bool(action["dueDateApproaching"])
    if action.get("dueDateApproachingDays") is not None:
        flat["reminderHoursBefore"] = float(action["dueDateApproachingDays"]) * 24
    if "actionDue" in action:
        flat["overdueCheck"] = bool(action["actionDue"])
    if "assigneeNotStartedDays" in escalation:
        days = escalation["assigneeNotStartedDays"]
        flat["escalationHoursAfter"] = None if days is None else float(days) * 24
    return flat


class NotificationPolicy(DefinitionModel):
    """When to remind, check overdue and escalate relative to a step's due date."""

    reminder_enabled: bool = True
    reminder_hours_before: float = Field(
        default_factory=lambda: float(settings.DEFAULT_REMINDER_HOURS_BEFORE)
    )
    overdue_check: bool = True
    # None disables escalation
    escalation_hours_after: float | None = Field(
        default_factory=lambda: float(settings.DEFAULT_ESCALATION_HOURS_AFTER)
    )

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data):
        return _flatten_alert_settings(data)


class ReminderOverride(DefinitionModel):
    """Per-step replacement for individual policy fields."""

    use_flow_defaults: bool = False
    reminder_enabled: bool | None = None
    reminder_hours_before: float | None = None
    overdue_check: bool | None = None
    escalation_hours_after: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data):
        return _flatten_alert_settings(data)

    def apply(self, policy: NotificationPolicy) -> NotificationPolicy:
        if self.use_flow_defaults:
            return policy
        update = {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name in NotificationPolicy.model_fields
        }
        # Explicit null only means "disabled" for escalation
        update = {
            k: v for k, v in update.items() if v is not None or k == "escalation_hours_after"
        }
        return policy.model_copy(update=update)


# =============================================================================
# Steps
# =============================================================================


class PathCondition(DefinitionModel):
    """``source`` is a reference token (e.g. ``{Kickoff / Country}``) or a literal."""

    source: str = ""
    operator: str = "equals"
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _field_shorthand(cls, data):
        # {"field": "country"} is shorthand for the kickoff field of that name
        if isinstance(data, dict) and "source" not in data and data.get("field"):
            data = {**data, "source": "{Kickoff / %s}" % data["field"]}
        return data


def _coerce_role(value: Any) -> str | None:
    """Assignee references may be a role name, a ref object or a list of either."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("roleName", "role", "name", "placeholderId"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
        return None
    if isinstance(value, list) and value:
        return _coerce_role(value[0])
    return None


# Keys lifted from ``config`` onto the step when not present at the top level
_LIFTED_CONFIG_KEYS = (
    "name",
    "description",
    "due",
    "reminderOverride",
    "paths",
    "outcomes",
    "targetStepId",
    "destinationId",
    "status",
    "formFields",
)


class BaseStep(DefinitionModel):
    step_id: str
    type: str = StepType.TODO.value
    name: str | None = None
    description: str | None = None
    assignee: str | None = None
    due: DueConfig | None = None
    reminder_override: ReminderOverride | None = None
    form_fields: list[dict] = Field(default_factory=list)
    config: dict = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("stepId") and data.get("id"):
            data["stepId"] = data["id"]
        if isinstance(data.get("type"), str):
            data["type"] = data["type"].upper()
        config = data.get("config") if isinstance(data.get("config"), dict) else {}
        data["config"] = config
        for key in _LIFTED_CONFIG_KEYS:
            if data.get(key) is None and config.get(key) is not None:
                data[key] = config[key]
        assignee = config.get("assignee") or data.get("assignee") or data.get("assignees")
        data["assignee"] = _coerce_role(assignee)
        data.pop("assignees", None)
        return data

    @property
    def display_name(self) -> str:
        return self.name or "Task"

    @property
    def is_control(self) -> bool:
        """Control steps resolve themselves on activation."""
        return False

    def child_paths(self) -> list["BranchPath"]:
        return []


class ActionStep(BaseStep):
    pass


class ExternalStep(BaseStep):
    """Completed by an outside caller (timer, sub-flow, automation)."""


class BranchPath(DefinitionModel):
    path_id: str
    label: str | None = None
    conditions: list[PathCondition] = Field(default_factory=list)
    condition_logic: Literal["AND", "OR"] = "AND"
    is_default: bool = False
    steps: list["Step"] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("pathId"):
                data["pathId"] = data.get("outcomeId") or data.get("id")
            if isinstance(data.get("conditionLogic"), str):
                data["conditionLogic"] = data["conditionLogic"].upper()
        return data


class DecisionStep(BaseStep):
    outcomes: list[BranchPath] = Field(default_factory=list)

    def child_paths(self) -> list[BranchPath]:
        return self.outcomes


class BranchStep(BaseStep):
    paths: list[BranchPath] = Field(default_factory=list)

    @property
    def is_parallel(self) -> bool:
        return self.type == StepType.PARALLEL_BRANCH.value

    @property
    def is_multi(self) -> bool:
        return self.type == StepType.MULTI_CHOICE_BRANCH.value

    @property
    def has_conditions(self) -> bool:
        return any(p.conditions for p in self.paths) or any(p.is_default for p in self.paths)

    @property
    def is_control(self) -> bool:
        return self.is_parallel or self.has_conditions

    def child_paths(self) -> list[BranchPath]:
        return self.paths


class GotoStep(BaseStep):
    target_step_id: str | None = None
    destination_id: str | None = None

    @property
    def target(self) -> str | None:
        return self.target_step_id or self.destination_id

    @property
    def is_control(self) -> bool:
        return True


class GotoDestinationStep(BaseStep):
    @property
    def is_control(self) -> bool:
        return True


class TerminateStep(BaseStep):
    status: TerminateStatus = TerminateStatus.COMPLETED

    @field_validator("status", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def is_control(self) -> bool:
        return True


def _step_kind(value: Any) -> str:
    step_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    step_type = step_type.upper() if isinstance(step_type, str) else ""
    if step_type == StepType.DECISION.value:
        return "decision"
    if step_type in BRANCH_STEP_TYPES:
        return "branch"
    if step_type == StepType.GOTO.value:
        return "goto"
    if step_type == StepType.GOTO_DESTINATION.value:
        return "goto_destination"
    if step_type == StepType.TERMINATE.value:
        return "terminate"
    if step_type in EXTERNAL_STEP_TYPES or step_type.startswith(EXTERNAL_STEP_PREFIXES):
        return "external"
    # Human actions and unknown types alike wait for a person
    return "action"


Step = Annotated[
    Union[
        Annotated[ActionStep, Tag("action")],
        Annotated[DecisionStep, Tag("decision")],
        Annotated[BranchStep, Tag("branch")],
        Annotated[GotoStep, Tag("goto")],
        Annotated[GotoDestinationStep, Tag("goto_destination")],
        Annotated[TerminateStep, Tag("terminate")],
        Annotated[ExternalStep, Tag("external")],
    ],
    Discriminator(_step_kind),
]

BranchPath.model_rebuild()
DecisionStep.model_rebuild()
BranchStep.model_rebuild()


# =============================================================================
# Definition
# =============================================================================


class AssigneePlaceholder(DefinitionModel):
    placeholder_id: str | None = None
    role_name: str
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if isinstance(data, dict) and not data.get("roleName") and data.get("name"):
            data = {**data, "roleName": data["name"]}
        return data


class Milestone(DefinitionModel):
    milestone_id: str | None = None
    name: str
    after_step_id: str | None = None


class KickoffConfig(DefinitionModel):
    fields: list[dict] = Field(default_factory=list)


# Outgoing event name -> per-endpoint subscription flag in the builder's config
WEBHOOK_EVENT_FLAGS = {
    "flow.started": "flowStarted",
    "step.completed": "stepCompleted",
    "flow.completed": "flowCompleted",
    "flow.cancelled": "flowCancelled",
    "step.overdue": "stepOverdue",
    "step.escalated": "stepEscalated",
}


class WebhookEndpointConfig(DefinitionModel):
    """Flow-level outgoing webhook endpoint."""

    endpoint_id: str | None = None
    url: str
    secret: str = ""
    enabled: bool = True
    # {"flowStarted": true, ...} or ["flow.started", ...]
    events: dict[str, bool] | list[str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if isinstance(data, dict) and not data.get("endpointId") and data.get("id"):
            data = {**data, "endpointId": data["id"]}
        return data

    def subscribes_to(self, event: str) -> bool:
        if not self.enabled:
            return False
        if isinstance(self.events, list):
            return event in self.events
        return bool(self.events.get(WEBHOOK_EVENT_FLAGS.get(event, event)))


class FlowSettings(DefinitionModel):
    notifications: NotificationPolicy = Field(default_factory=NotificationPolicy)
    webhook_endpoints: list[WebhookEndpointConfig] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _extract_endpoints(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        notifications = data.get("notifications")
        if notifications is None:
            data.pop("notifications", None)
        elif isinstance(notifications, dict) and "webhookEndpoints" not in data:
            channels = notifications.get("channelIntegrations") or {}
            endpoints = (channels.get("webhooks") or {}).get("endpoints")
            if isinstance(endpoints, list):
                data["webhookEndpoints"] = endpoints
        return data


class DueDates(DefinitionModel):
    flow_due: DueConfig | None = None


def _assign_missing_ids(steps: Any, prefix: str) -> Any:
    """Give id-less steps a stable positional id so rows can be keyed by step."""
    if not isinstance(steps, list):
        return steps
    out = []
    for index, raw in enumerate(steps):
        if isinstance(raw, dict):
            raw = dict(raw)
            if not raw.get("stepId") and not raw.get("id"):
                raw["stepId"] = f"{prefix}{index + 1}"
            step_id = raw.get("stepId") or raw.get("id")
            config = raw.get("config") if isinstance(raw.get("config"), dict) else None
            for key in ("paths", "outcomes"):
                holder = raw if isinstance(raw.get(key), list) else config
                if holder is None or not isinstance(holder.get(key), list):
                    continue
                paths = []
                for p_index, path in enumerate(holder[key]):
                    if isinstance(path, dict):
                        path = dict(path)
                        path_id = path.get("pathId") or path.get("outcomeId") or path.get("id")
                        if not path_id:
                            path_id = f"path-{p_index + 1}"
                            path["pathId"] = path_id
                        path["steps"] = _assign_missing_ids(
                            path.get("steps") or [], f"{step_id}.{path_id}.step-"
                        )
                    paths.append(path)
                if holder is config:
                    raw["config"] = {**config, key: paths}
                else:
                    raw[key] = paths
        out.append(raw)
    return out


class FlowDefinition(DefinitionModel):
    steps: list[Step] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)
    assignee_placeholders: list[AssigneePlaceholder] = Field(default_factory=list)
    kickoff: KickoffConfig = Field(default_factory=KickoffConfig)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    due_dates: DueDates = Field(default_factory=DueDates)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            for key in ("milestones", "assigneePlaceholders", "kickoff", "settings", "dueDates"):
                if data.get(key) is None:
                    data.pop(key, None)
            data["steps"] = _assign_missing_ids(data.get("steps") or [], "step-")
            # Legacy definitions keep kickoff fields at the top level
            if "kickoff" not in data and isinstance(data.get("kickoffFields"), list):
                data["kickoff"] = {"fields": data["kickoffFields"]}
        return data

    def walk(self) -> Iterator[tuple[BaseStep, str | None]]:
        """Yield every step depth-first with its scope key (None on the main path)."""
        yield from _walk(self.steps, None)

    def find_step(self, step_id: str) -> BaseStep | None:
        for step, _scope in self.walk():
            if step.step_id == step_id:
                return step
        return None

    @property
    def role_names(self) -> list[str]:
        """Known roles: placeholders first, then roles only referenced by steps."""
        names = [p.role_name for p in self.assignee_placeholders]
        for step, _scope in self.walk():
            if step.assignee and step.assignee not in names:
                names.append(step.assignee)
        return names


def scope_key(parent_scope: str | None, branch_step_id: str, path_id: str) -> str:
    segment = f"{branch_step_id}/{path_id}"
    return segment if parent_scope is None else f"{parent_scope}::{segment}"


def _walk(steps: list[BaseStep], scope: str | None) -> Iterator[tuple[BaseStep, str | None]]:
    for step in steps:
        yield step, scope
        for path in step.child_paths():
            yield from _walk(path.steps, scope_key(scope, step.step_id, path.path_id))


def _validate_structure(definition: FlowDefinition) -> None:
    seen: set[str] = set()
    main_ids = {step.step_id for step in definition.steps}
    for step, scope in definition.walk():
        if step.step_id in seen:
            raise FlowValidationError(f"Duplicate step id '{step.step_id}'")
        seen.add(step.step_id)
        if isinstance(step, (GotoStep, GotoDestinationStep)) and scope is not None:
            raise FlowValidationError(
                f"Step '{step.step_id}' ({step.type}) is only allowed on the main path"
            )
        if isinstance(step, (BranchStep, DecisionStep)) and not step.child_paths():
            raise FlowValidationError(f"Branch step '{step.step_id}' has no paths")
        path_ids = [p.path_id for p in step.child_paths()]
        if len(path_ids) != len(set(path_ids)):
            raise FlowValidationError(f"Branch step '{step.step_id}' has duplicate path ids")
    for step in definition.steps:
        if isinstance(step, GotoStep):
            if not step.target:
                raise FlowValidationError(f"Goto step '{step.step_id}' has no target")
            if step.target not in main_ids:
                raise FlowValidationError(
                    f"Goto step '{step.step_id}' targets unknown step '{step.target}'"
                )


def parse_definition(raw: Any) -> FlowDefinition:
    """Parse and structurally validate a stored definition.

    Raises:
        FlowValidationError: Malformed document or invalid graph structure.
            An empty step list is accepted here; callers decide whether it is runnable.
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise FlowValidationError("Flow definition must be an object")
    try:
        definition = FlowDefinition.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise FlowValidationError(f"Invalid flow definition at {location}: {first.get('msg')}") from exc
    _validate_structure(definition)
    return definition
