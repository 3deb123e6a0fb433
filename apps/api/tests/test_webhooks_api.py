"""Tests for the webhook trigger API."""

import pytest
from httpx import AsyncClient

from app.db.enums import AuditAction, JobType
from app.db.models import AuditLog, Job, MagicLink, StepExecution


@pytest.mark.asyncio
async def test_start_flow_end_to_end(client: AsyncClient, db, make_flow, test_contact):
    flow = make_flow(
        {"steps": [{"id": "s1", "config": {"assignee": "Client"}}, {"id": "s2"}]}
    )

    response = await client.post(
        f"/api/webhooks/flows/{flow.id}/start",
        json={"roleAssignments": {"Client": "contact-123"}},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    run = body["data"]
    assert run["flow"] == {"id": flow.id, "name": "Client Onboarding"}
    assert run["startedBy"]["email"] == "coordinator@test.com"

    s1, s2 = run["stepExecutions"]
    assert s1["stepId"] == "s1"
    assert s1["status"] == "IN_PROGRESS"
    assert s1["assignedToContactId"] == "contact-123"
    assert s2["stepId"] == "s2"
    assert s2["status"] == "PENDING"
    assert s2["assignedToContactId"] is None
    assert s2["assignedToUserId"] is None

    row = db.query(StepExecution).filter(StepExecution.id == s1["id"]).one()
    assert db.query(MagicLink).filter(MagicLink.step_execution_id == row.id).count() == 1
    assert db.query(Job).filter(Job.job_type == JobType.SEND_EMAIL.value).count() == 1
    assert (
        db.query(AuditLog)
        .filter(
            AuditLog.flow_run_id == run["id"],
            AuditLog.action == AuditAction.WEBHOOK_FLOW_STARTED.value,
        )
        .count()
        == 1
    )


@pytest.mark.asyncio
async def test_start_flow_without_body(client: AsyncClient, make_flow):
    flow = make_flow({"steps": [{"id": "s1"}]})

    response = await client.post(f"/api/webhooks/flows/{flow.id}/start")

    assert response.status_code == 201
    assert response.json()["data"]["name"].startswith("Client Onboarding - Webhook ")


@pytest.mark.asyncio
async def test_start_flow_with_name_and_kickoff(client: AsyncClient, make_flow):
    flow = make_flow({"steps": [{"id": "s1"}]})

    response = await client.post(
        f"/api/webhooks/flows/{flow.id}/start",
        json={
            "name": "  Acme onboarding  ",
            "kickoffData": {"Country": "US"},
            "callbackUrl": "https://example.com/callback",
        },
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["name"] == "Acme onboarding"
    assert data["kickoffData"] == {
        "Country": "US",
        "_callbackUrl": "https://example.com/callback",
    }


@pytest.mark.asyncio
async def test_start_flow_with_no_steps(client: AsyncClient, make_flow):
    flow = make_flow({"steps": []})

    response = await client.post(f"/api/webhooks/flows/{flow.id}/start", json={})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": {"code": "VALIDATION_ERROR", "message": "Flow has no steps defined"},
    }


@pytest.mark.asyncio
async def test_start_unknown_flow(client: AsyncClient, db):
    response = await client.post("/api/webhooks/flows/does-not-exist/start", json={})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_start_flow_rejects_malformed_body(client: AsyncClient, make_flow):
    flow = make_flow({"steps": [{"id": "s1"}]})

    response = await client.post(
        f"/api/webhooks/flows/{flow.id}/start", json={"roleAssignments": "Client"}
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_flow_schema(client: AsyncClient, make_flow):
    flow = make_flow(
        {
            "assigneePlaceholders": [{"roleName": "Client", "description": "The customer"}],
            "kickoff": {"fields": [{"label": "Country", "type": "text"}]},
            "steps": [{"id": "s1"}],
        }
    )

    response = await client.get(f"/api/webhooks/flows/{flow.id}/schema")

    assert response.status_code == 200
    assert response.json()["data"] == {
        "flowId": flow.id,
        "flowName": "Client Onboarding",
        "assigneePlaceholders": [{"roleName": "Client", "description": "The customer"}],
        "kickoffFields": [{"label": "Country", "type": "text"}],
    }


@pytest.mark.asyncio
async def test_flow_schema_unknown_flow(client: AsyncClient, db):
    response = await client.get("/api/webhooks/flows/nope/schema")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_flow_schema_unchanged_by_starting_a_run(client: AsyncClient, make_flow, test_contact):
    flow = make_flow(
        {
            "assigneePlaceholders": [{"roleName": "Client"}],
            "kickoff": {"fields": [{"label": "Country"}]},
            "steps": [{"id": "s1", "assignee": "Client"}],
        }
    )
    schema_url = f"/api/webhooks/flows/{flow.id}/schema"

    before = (await client.get(schema_url)).json()["data"]
    started = await client.post(
        f"/api/webhooks/flows/{flow.id}/start",
        json={"roleAssignments": {"Client": "contact-123"}, "kickoffData": {"Country": "US"}},
    )
    after = (await client.get(schema_url)).json()["data"]

    assert started.status_code == 201
    assert after == before
    assert after["kickoffFields"] == [{"label": "Country"}]


@pytest.mark.asyncio
async def test_flow_schema_without_kickoff_lists_no_fields(client: AsyncClient, make_flow):
    flow = make_flow({"steps": [{"id": "s1"}]})

    response = await client.get(f"/api/webhooks/flows/{flow.id}/schema")

    data = response.json()["data"]
    assert data["kickoffFields"] == []
    assert data["assigneePlaceholders"] == []


@pytest.mark.asyncio
async def test_flow_schema_reads_top_level_kickoff_fields(client: AsyncClient, make_flow):
    flow = make_flow({"kickoffFields": [{"label": "Plan"}], "steps": [{"id": "s1"}]})

    response = await client.get(f"/api/webhooks/flows/{flow.id}/schema")

    assert response.json()["data"]["kickoffFields"] == [{"label": "Plan"}]
