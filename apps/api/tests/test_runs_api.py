"""Tests for the coordinator run API (/api/runs)."""

import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.services import flow_run_service

FLOW = {
    "steps": [
        {"id": "intake", "name": "Intake"},
        {
            "id": "choose",
            "type": "SINGLE_CHOICE_BRANCH",
            "paths": [
                {"pathId": "fast", "steps": []},
                {"pathId": "full", "steps": [{"id": "review"}]},
            ],
        },
        {"id": "wrap"},
    ]
}


@pytest.fixture
def run(db, make_flow):
    flow = make_flow(FLOW)
    return flow_run_service.start_run(db, flow.id)


def _step(run_data: dict, step_id: str) -> dict:
    return next(s for s in run_data["stepExecutions"] if s["stepId"] == step_id)


@pytest.mark.asyncio
async def test_requires_internal_secret(client: AsyncClient, run):
    response = await client.get(f"/api/runs/{run.id}")
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"

    response = await client.get(
        f"/api/runs/{run.id}", headers={"X-Internal-Secret": "wrong"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_secret_not_configured(client: AsyncClient, run, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")

    response = await client.get(
        f"/api/runs/{run.id}", headers={"X-Internal-Secret": "anything"}
    )

    assert response.status_code == 501


@pytest.mark.asyncio
async def test_get_run(coordinator_client: AsyncClient, run):
    response = await coordinator_client.get(f"/api/runs/{run.id}")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == run.id
    assert [s["stepId"] for s in data["stepExecutions"]] == ["intake", "choose", "wrap"]
    assert _step(data, "intake")["stepName"] == "Intake"


@pytest.mark.asyncio
async def test_get_unknown_run(coordinator_client: AsyncClient, db):
    response = await coordinator_client.get("/api/runs/missing")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_complete_branch_and_finish(coordinator_client: AsyncClient, run):
    intake = _step(run.model_dump(by_alias=True), "intake")
    response = await coordinator_client.post(
        f"/api/runs/{run.id}/steps/{intake['id']}/complete",
        json={"resultData": {"notes": "all good"}},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert _step(data, "intake")["status"] == "COMPLETED"
    assert _step(data, "intake")["completedById"] == "coordinator"
    choose = _step(data, "choose")
    assert choose["status"] == "IN_PROGRESS"

    response = await coordinator_client.post(
        f"/api/runs/{run.id}/steps/{choose['id']}/complete", json={"resultData": {}}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    response = await coordinator_client.post(
        f"/api/runs/{run.id}/steps/{choose['id']}/complete",
        json={"resultData": {"selectedPathId": "fast"}},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    wrap = _step(data, "wrap")
    assert wrap["status"] == "IN_PROGRESS"

    response = await coordinator_client.post(f"/api/runs/{run.id}/steps/{wrap['id']}/complete")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_complete_inactive_step_conflicts(coordinator_client: AsyncClient, run):
    wrap = _step(run.model_dump(by_alias=True), "wrap")

    response = await coordinator_client.post(f"/api/runs/{run.id}/steps/{wrap['id']}/complete")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_skip_step(coordinator_client: AsyncClient, run):
    intake = _step(run.model_dump(by_alias=True), "intake")

    response = await coordinator_client.post(f"/api/runs/{run.id}/steps/{intake['id']}/skip")

    assert response.status_code == 200
    data = response.json()["data"]
    assert _step(data, "intake")["status"] == "SKIPPED"
    assert _step(data, "choose")["status"] == "IN_PROGRESS"


@pytest.mark.asyncio
async def test_cancel_run_and_audit(coordinator_client: AsyncClient, run):
    response = await coordinator_client.post(
        f"/api/runs/{run.id}/cancel", json={"reason": "Duplicate request"}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "CANCELLED"
    assert {s["status"] for s in data["stepExecutions"]} == {"SKIPPED"}

    response = await coordinator_client.post(f"/api/runs/{run.id}/cancel")
    assert response.status_code == 409

    response = await coordinator_client.get(f"/api/runs/{run.id}/audit")
    assert response.status_code == 200
    entries = response.json()["data"]
    actions = [e["action"] for e in entries]
    assert "WEBHOOK_FLOW_STARTED" in actions
    assert "FLOW_CANCELLED" in actions
    cancelled = next(e for e in entries if e["action"] == "FLOW_CANCELLED")
    assert cancelled["details"] == {"reason": "Duplicate request"}
    assert cancelled["actorId"] == "coordinator"
