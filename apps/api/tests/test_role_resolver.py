"""Tests for mapping flow roles to contacts."""

from app.db.enums import COORDINATOR_ROLE
from app.db.models import Contact, Organization
from app.schemas.flow_definition import parse_definition
from app.services import role_resolver

DEFINITION = parse_definition(
    {
        "assigneePlaceholders": [{"roleName": "Client"}],
        "steps": [
            {"id": "s1", "assignee": "Client"},
            {"id": "s2", "assignee": "Vendor"},
            {"id": "s3", "assignee": COORDINATOR_ROLE},
            {"id": "s4"},
        ],
    }
)


def test_unknown_roles_and_empty_ids_are_dropped():
    resolved = role_resolver.resolve_role_assignments(
        DEFINITION,
        {"Client": " contact-1 ", "Vendor": "", "Stranger": "contact-9", COORDINATOR_ROLE: 5},
    )
    assert resolved == {"Client": "contact-1"}


def test_no_mapping_resolves_to_empty():
    assert role_resolver.resolve_role_assignments(DEFINITION, None) == {}


def test_contacts_outside_the_org_are_dropped(db, test_org, test_contact):
    other = Organization(name="Other", slug="other")
    db.add(other)
    db.flush()
    db.add(Contact(id="foreign", organization_id=other.id, email="x@other.com", name="X"))
    db.commit()

    kept = role_resolver.filter_existing_contacts(
        db,
        test_org.id,
        {"Client": "contact-123", "Vendor": "foreign", "Auditor": "missing"},
    )
    assert kept == {"Client": "contact-123"}


def test_step_assignee_resolution():
    assignments = {"Client": "contact-1"}
    s1, s2, s3, s4 = DEFINITION.steps

    assert role_resolver.resolve_step_assignee(s1, assignments, "user-1") == ("contact-1", None)
    assert role_resolver.resolve_step_assignee(s2, assignments, "user-1") == (None, None)
    assert role_resolver.resolve_step_assignee(s3, assignments, "user-1") == (None, "user-1")
    assert role_resolver.resolve_step_assignee(s4, assignments, "user-1") == (None, None)
