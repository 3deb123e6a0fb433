"""Tests for magic link issuance and task completion."""

from datetime import timedelta

import pytest

from app.core.errors import FlowNotFoundError, InvalidStateError, LinkExpiredError
from app.db.models import MagicLink
from app.db.types import utcnow
from app.services import flow_run_service, magic_link_service

FLOW = {
    "steps": [
        {"id": "sign", "name": "Sign agreement", "assignee": "Client"},
        {"id": "review", "name": "Review"},
    ]
}


@pytest.fixture
def sign_row(db, make_flow, test_contact, step_rows):
    flow = make_flow(FLOW)
    run = flow_run_service.start_run(db, flow.id, role_assignments={"Client": test_contact.id})
    return step_rows(run.id)["sign"]


def test_tokens_are_unique_and_url_safe():
    tokens = {magic_link_service.generate_token() for _ in range(20)}

    assert len(tokens) == 20
    assert all(len(token) >= 40 for token in tokens)
    assert all("/" not in token and "+" not in token for token in tokens)


def test_create_and_validate(db, sign_row):
    now = utcnow()
    token = magic_link_service.create_magic_link(db, sign_row.id, expires_in_hours=2, now=now)
    db.commit()

    context = magic_link_service.validate_magic_link(db, token, now=now)

    assert context.step_execution_id == sign_row.id
    assert context.step_name == "Sign agreement"
    assert context.contact_email == "client@example.com"
    assert context.expires_at == now + timedelta(hours=2)
    assert not context.expired
    assert not context.completed


def test_validate_unknown_token(db):
    assert magic_link_service.validate_magic_link(db, "missing") is None
    with pytest.raises(FlowNotFoundError):
        magic_link_service.require_active_task(db, "missing")


def test_expired_link(db, sign_row):
    now = utcnow()
    token = magic_link_service.create_magic_link(db, sign_row.id, expires_in_hours=1, now=now)
    db.commit()
    later = now + timedelta(hours=1)

    assert magic_link_service.validate_magic_link(db, token, now=later).expired
    with pytest.raises(LinkExpiredError):
        magic_link_service.complete_task(db, token, now=later)


def test_complete_task_records_contact(db, sign_row, step_rows):
    link = db.query(MagicLink).filter(MagicLink.step_execution_id == sign_row.id).one()

    context = magic_link_service.complete_task(db, link.token, result_data={"signed": True})

    assert context.completed
    rows = step_rows(sign_row.flow_run_id)
    assert rows["sign"].status == "COMPLETED"
    assert rows["sign"].completed_by_id == "contact-123"
    assert rows["sign"].result_data == {"signed": True}
    assert rows["review"].status == "IN_PROGRESS"
    db.refresh(link)
    assert link.used_at is not None

    with pytest.raises(InvalidStateError):
        magic_link_service.complete_task(db, link.token)
