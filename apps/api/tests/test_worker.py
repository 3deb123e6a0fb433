"""Tests for the job registry and worker loop."""

import pytest

from app.db.enums import JobStatus, JobType, NotificationStatus
from app.db.models import NotificationLog, WebhookEndpoint
from app.services import job_service, webhook_service


@pytest.mark.parametrize("job_type", list(JobType))
def test_job_registry_resolves_every_job_type(job_type):
    from app.jobs.registry import resolve_job_handler

    assert callable(resolve_job_handler(job_type.value))


def test_job_registry_unknown_raises():
    from app.jobs.registry import resolve_job_handler

    with pytest.raises(ValueError):
        resolve_job_handler("nope")


@pytest.mark.asyncio
async def test_process_job_uses_registry(monkeypatch):
    from app import worker

    calls: dict[str, str] = {}

    async def stub_handler(_db, job):
        calls["job_type"] = job.job_type

    def stub_resolver(job_type: str):
        calls["resolved"] = job_type
        return stub_handler

    monkeypatch.setattr(worker, "resolve_job_handler", stub_resolver)

    job = type(
        "Job",
        (),
        {
            "id": "job-id",
            "job_type": JobType.WEBHOOK_DELIVERY.value,
            "attempts": 0,
            "payload": {},
            "organization_id": None,
        },
    )()

    await worker.process_job(None, job)

    assert calls["resolved"] == JobType.WEBHOOK_DELIVERY.value
    assert calls["job_type"] == JobType.WEBHOOK_DELIVERY.value


@pytest.mark.asyncio
async def test_dry_run_email_completes(db, test_org):
    from app import worker

    job = job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.SEND_EMAIL,
        payload={"to": "client@example.com", "subject": "Hello", "html": "<p>Hi</p>"},
    )
    db.commit()

    assert await worker.run_pending_jobs(db) == 1

    db.refresh(job)
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1
    entry = db.query(NotificationLog).one()
    assert entry.status == NotificationStatus.SKIPPED.value
    assert entry.recipient == "client@example.com"


@pytest.mark.asyncio
async def test_failed_webhook_delivery_is_retried(db, test_org, monkeypatch):
    from app import worker

    endpoint = WebhookEndpoint(organization_id=test_org.id, url="https://h.example.com/in", secret="s")
    db.add(endpoint)
    db.commit()

    async def refuse(url, body, secret, **kwargs):
        raise webhook_service.WebhookDeliveryError("Webhook delivery to https://h.example.com/in returned 503")

    monkeypatch.setattr(webhook_service, "deliver", refuse)

    job = job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.WEBHOOK_DELIVERY,
        payload={
            "target": {"kind": "org", "endpoint_id": endpoint.id, "url": endpoint.url},
            "body": {"event": "flow.started"},
        },
    )
    db.commit()

    await worker.run_pending_jobs(db)

    db.refresh(job)
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 1
    assert "503" in job.last_error
    entry = db.query(NotificationLog).one()
    assert entry.status == NotificationStatus.FAILED.value
    assert entry.event_type == "flow.started"


@pytest.mark.asyncio
async def test_webhook_to_removed_endpoint_is_skipped(db, test_org):
    from app import worker

    job = job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.WEBHOOK_DELIVERY,
        payload={
            "target": {"kind": "org", "endpoint_id": "gone", "url": "https://h.example.com/in"},
            "body": {"event": "flow.completed"},
        },
    )
    db.commit()

    await worker.run_pending_jobs(db)

    db.refresh(job)
    assert job.status == JobStatus.COMPLETED.value
    assert db.query(NotificationLog).one().status == NotificationStatus.SKIPPED.value
