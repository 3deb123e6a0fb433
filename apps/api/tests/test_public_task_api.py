"""Tests for magic-link task pages."""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from app.db.models import MagicLink, StepExecution
from app.db.types import utcnow
from app.services import flow_run_service

FLOW = {
    "steps": [
        {
            "id": "s1",
            "name": "Upload documents",
            "description": "Passport and proof of address",
            "type": "FILE_REQUEST",
            "assignee": "Client",
            "formFields": [{"id": "passport", "type": "file"}],
        },
        {"id": "s2", "assignee": "Client"},
    ]
}


@pytest.fixture
def started(db, make_flow, test_contact):
    flow = make_flow(FLOW)
    run = flow_run_service.start_run(db, flow.id, role_assignments={"Client": test_contact.id})
    return run


def _token(db, run_id: str, step_id: str) -> str:
    row = (
        db.query(StepExecution)
        .filter(StepExecution.flow_run_id == run_id, StepExecution.step_id == step_id)
        .one()
    )
    return db.query(MagicLink).filter(MagicLink.step_execution_id == row.id).one().token


@pytest.mark.asyncio
async def test_get_task(client: AsyncClient, db, started):
    token = _token(db, started.id, "s1")

    response = await client.get(f"/api/public/task/{token}")

    assert response.status_code == 200
    task = response.json()["data"]
    assert task["flowName"] == "Client Onboarding"
    assert task["stepName"] == "Upload documents"
    assert task["stepDescription"] == "Passport and proof of address"
    assert task["stepType"] == "FILE_REQUEST"
    assert task["status"] == "IN_PROGRESS"
    assert task["contactName"] == "Casey Client"
    assert task["formFields"] == [{"id": "passport", "type": "file"}]


@pytest.mark.asyncio
async def test_complete_task_advances_run(client: AsyncClient, db, started):
    token = _token(db, started.id, "s1")

    response = await client.post(
        f"/api/public/task/{token}/complete",
        json={"resultData": {"passport": "file-1"}},
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "COMPLETED"

    rows = {
        row.step_id: row
        for row in db.query(StepExecution).filter(StepExecution.flow_run_id == started.id)
    }
    assert rows["s1"].completed_by_id == "contact-123"
    assert rows["s1"].result_data == {"passport": "file-1"}
    assert rows["s2"].status == "IN_PROGRESS"
    # The next step gets its own link
    assert _token(db, started.id, "s2") != token

    again = await client.post(f"/api/public/task/{token}/complete", json={})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_expired_link(client: AsyncClient, db, started):
    token = _token(db, started.id, "s1")
    link = db.query(MagicLink).filter(MagicLink.token == token).one()
    link.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    response = await client.get(f"/api/public/task/{token}")
    assert response.status_code == 410
    assert response.json()["error"]["code"] == "LINK_EXPIRED"

    response = await client.post(f"/api/public/task/{token}/complete", json={})
    assert response.status_code == 410


@pytest.mark.asyncio
async def test_unknown_token(client: AsyncClient, db):
    response = await client.get("/api/public/task/not-a-token")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
