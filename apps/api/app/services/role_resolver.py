"""Role resolution - map a flow's assignee roles to concrete contacts.

A webhook caller sends ``roleAssignments`` as ``{roleName: contactId}``.
Only roles the flow knows about (placeholders plus roles referenced by step
assignees) are kept; anything else is dropped without error.
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.db.enums import COORDINATOR_ROLE
from app.db.models import Contact
from app.schemas.flow_definition import BaseStep, FlowDefinition

logger = logging.getLogger(__name__)


def resolve_role_assignments(
    definition: FlowDefinition,
    mapping: dict[str, Any] | None,
) -> dict[str, str]:
    """Restrict a caller mapping to known roles with non-empty string contact ids."""
    if not mapping:
        return {}

    known = set(definition.role_names)
    known.add(COORDINATOR_ROLE)
    resolved: dict[str, str] = {}
    for role, contact_id in mapping.items():
        if role not in known:
            logger.debug("Dropping assignment for unknown role %s", role)
            continue
        if not isinstance(contact_id, str) or not contact_id.strip():
            logger.debug("Dropping empty assignment for role %s", role)
            continue
        resolved[role] = contact_id.strip()
    return resolved


def filter_existing_contacts(
    db: Session,
    org_id: str,
    assignments: dict[str, str],
) -> dict[str, str]:
    """Drop assignments whose contact is not in the organization."""
    if not assignments:
        return {}
    found = {
        row.id
        for row in db.query(Contact.id)
        .filter(
            Contact.organization_id == org_id,
            Contact.id.in_(set(assignments.values())),
        )
        .all()
    }
    kept = {role: cid for role, cid in assignments.items() if cid in found}
    if len(kept) != len(assignments):
        logger.warning(
            "Ignored %s role assignments with unknown contacts",
            len(assignments) - len(kept),
        )
    return kept


def resolve_step_assignee(
    step: BaseStep,
    assignments: dict[str, str],
    starter_user_id: str | None = None,
) -> tuple[str | None, str | None]:
    """
    Who works on ``step``.

    Returns (contact_id, user_id); at most one is set. A step assigned to the
    coordinator sentinel falls back to the user who started the run.
    """
    role = step.assignee
    if not role:
        return None, None
    contact_id = assignments.get(role)
    if contact_id:
        return contact_id, None
    if role == COORDINATOR_ROLE and starter_user_id:
        return None, starter_user_id
    return None, None
