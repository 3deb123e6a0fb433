"""Condition evaluation for branch paths.

A condition's ``source`` is either a literal or a reference token resolved
against the run:

    {Kickoff / Field Label}     kickoff data value
    {Role: RoleName / Name}     assigned contact's name (or Email)
    {Workspace / Name}          organization name (or ID)
    {Step Name / Field}         output of a completed step (by name or id)

Unresolvable tokens resolve to the empty string.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from app.db.enums import ConditionOperator, StepExecutionStatus
from app.db.models import Contact, FlowRun, StepExecution
from app.schemas.flow_definition import BranchStep, FlowDefinition, PathCondition

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{([^{}]+)\}")


@dataclass
class EvaluationContext:
    kickoff_data: dict[str, Any] = field(default_factory=dict)
    roles: dict[str, dict[str, Any]] = field(default_factory=dict)
    step_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    workspace: dict[str, Any] = field(default_factory=dict)


def build_context(db: Session, run: FlowRun, definition: FlowDefinition) -> EvaluationContext:
    """Gather kickoff data, role contacts and completed step outputs for a run."""
    roles: dict[str, dict[str, Any]] = {}
    assignments = run.role_assignments or {}
    contact_ids = [cid for cid in assignments.values() if isinstance(cid, str)]
    contacts = {}
    if contact_ids:
        contacts = {
            c.id: c for c in db.query(Contact).filter(Contact.id.in_(contact_ids)).all()
        }
    for role, contact_id in assignments.items():
        contact = contacts.get(contact_id)
        roles[role] = {
            "contactId": contact_id,
            "name": contact.name if contact else "",
            "email": contact.email if contact else "",
        }

    step_outputs: dict[str, dict[str, Any]] = {}
    completed = (
        db.query(StepExecution)
        .filter(
            StepExecution.flow_run_id == run.id,
            StepExecution.status == StepExecutionStatus.COMPLETED.value,
        )
        .all()
    )
    for row in completed:
        if not row.result_data:
            continue
        step_outputs[row.step_id] = row.result_data
        step = definition.find_step(row.step_id)
        if step is not None and step.name:
            step_outputs[step.name] = row.result_data

    workspace = {}
    if run.organization is not None:
        workspace = {"name": run.organization.name, "id": run.organization.id}

    return EvaluationContext(
        kickoff_data=dict(run.kickoff_data or {}),
        roles=roles,
        step_outputs=step_outputs,
        workspace=workspace,
    )


def _lookup(data: dict[str, Any], key: str) -> Any:
    if key in data:
        return data[key]
    lowered = key.lower()
    for candidate, value in data.items():
        if str(candidate).lower() == lowered:
            return value
    return None


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(v) for v in value)
    return str(value)


def _resolve_token(token: str, context: EvaluationContext) -> str | None:
    source, sep, field_name = token.partition("/")
    if not sep:
        return None
    source = source.strip()
    field_name = field_name.strip()

    if source == "Kickoff":
        value = _lookup(context.kickoff_data, field_name)
        return None if value is None else _stringify(value)

    if source.startswith("Role:"):
        role = context.roles.get(source[len("Role:"):].strip())
        if not role:
            return None
        if field_name.lower() == "email":
            return role.get("email") or ""
        return role.get("name") or ""

    if source == "Workspace":
        key = "id" if field_name.lower() == "id" else "name"
        value = context.workspace.get(key)
        return None if value is None else _stringify(value)

    output = context.step_outputs.get(source)
    if output is None:
        return None
    value = _lookup(output, field_name)
    return None if value is None else _stringify(value)


def resolve_source(source: str, context: EvaluationContext) -> str:
    """Substitute reference tokens in ``source``; literals pass through."""
    if "{" not in source or "}" not in source:
        return source

    def _replace(match: re.Match) -> str:
        resolved = _resolve_token(match.group(1), context)
        return "" if resolved is None else resolved

    return TOKEN_PATTERN.sub(_replace, source)


def _normalize_list_value(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip().lower() for v in value if str(v).strip()]
    return [v.strip().lower() for v in str(value).split(",") if v.strip()]


def _as_number(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: PathCondition, context: EvaluationContext) -> bool:
    """Evaluate a single condition."""
    actual = resolve_source(condition.source, context)
    expected = _stringify(condition.value)
    operator = condition.operator

    if operator == ConditionOperator.EQUALS.value:
        return actual.lower() == expected.lower()

    if operator == ConditionOperator.NOT_EQUALS.value:
        return actual.lower() != expected.lower()

    if operator == ConditionOperator.CONTAINS.value:
        return expected.lower() in actual.lower()

    if operator == ConditionOperator.NOT_CONTAINS.value:
        return expected.lower() not in actual.lower()

    if operator in (ConditionOperator.GREATER_THAN.value, ConditionOperator.LESS_THAN.value):
        left = _as_number(actual)
        right = _as_number(expected)
        if left is None or right is None:
            return False
        if operator == ConditionOperator.GREATER_THAN.value:
            return left > right
        return left < right

    if operator == ConditionOperator.IS_EMPTY.value:
        return actual.strip() == ""

    if operator in (ConditionOperator.NOT_EMPTY.value, "is_not_empty"):
        return actual.strip() != ""

    if operator == ConditionOperator.IN.value:
        return actual.lower() in _normalize_list_value(condition.value)

    if operator == ConditionOperator.NOT_IN.value:
        return actual.lower() not in _normalize_list_value(condition.value)

    logger.warning("Unknown condition operator %s", operator)
    return False


def evaluate_conditions(
    conditions: list[PathCondition],
    logic: str,
    context: EvaluationContext,
) -> bool:
    """Evaluate condition list with AND/OR logic."""
    if not conditions:
        return True

    results = [evaluate_condition(condition, context) for condition in conditions]

    if logic == "AND":
        return all(results)
    else:  # OR
        return any(results)


def select_paths(branch: BranchStep, context: EvaluationContext) -> list[str]:
    """Pick the path ids a conditional branch should enter.

    Single choice takes the first matching path, multi choice every matching
    path. With no match the default path (if any) is used; an empty result
    means the branch has to wait for a manual selection.
    """
    matches = [
        path.path_id
        for path in branch.paths
        if path.conditions
        and evaluate_conditions(path.conditions, path.condition_logic, context)
    ]
    if matches and not branch.is_multi:
        matches = matches[:1]
    if not matches:
        matches = [path.path_id for path in branch.paths if path.is_default][:1]
    return matches
