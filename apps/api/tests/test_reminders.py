"""Tests for step timer job handlers."""

from datetime import timedelta

import pytest

from app.db.enums import AuditAction, JobType
from app.db.models import AuditLog, Job, WebhookEndpoint
from app.db.types import utcnow
from app.jobs.handlers import reminders
from app.services import flow_run_service, job_service

FLOW = {"steps": [{"id": "collect", "name": "Collect documents", "assignee": "Client"}, {"id": "done"}]}


@pytest.fixture
def open_row(db, make_flow, test_contact, step_rows):
    flow = make_flow(FLOW)
    run = flow_run_service.start_run(db, flow.id, role_assignments={"Client": test_contact.id})
    return step_rows(run.id)["collect"]


def _timer(db, row, job_type: JobType, iteration: int | None = None) -> Job:
    job = job_service.schedule_job(
        db,
        org_id=row.flow_run.organization_id,
        job_type=job_type,
        payload={
            "step_execution_id": row.id,
            "iteration": row.iteration if iteration is None else iteration,
        },
        step_execution_id=row.id,
    )
    db.commit()
    return job


def _emails_to(db, address: str) -> list[Job]:
    return [
        job
        for job in db.query(Job).filter(Job.job_type == JobType.SEND_EMAIL.value)
        if job.payload["to"] == address
    ]


def _actions(db, run_id: str) -> list[str]:
    return [entry.action for entry in db.query(AuditLog).filter(AuditLog.flow_run_id == run_id)]


@pytest.mark.asyncio
async def test_reminder_emails_assignee(db, open_row):
    before = len(_emails_to(db, "client@example.com"))

    await reminders.process_step_reminder(db, _timer(db, open_row, JobType.STEP_REMINDER))

    db.refresh(open_row)
    assert open_row.reminder_count == 1
    assert open_row.last_reminder_sent_at is not None
    emails = _emails_to(db, "client@example.com")
    assert len(emails) == before + 1
    assert "Collect documents" in emails[-1].payload["subject"] + emails[-1].payload["html"]
    assert AuditAction.REMINDER_SENT.value in _actions(db, open_row.flow_run_id)


@pytest.mark.asyncio
async def test_stale_iteration_is_ignored(db, open_row):
    job = _timer(db, open_row, JobType.STEP_REMINDER, iteration=open_row.iteration + 1)

    await reminders.process_step_reminder(db, job)

    db.refresh(open_row)
    assert open_row.reminder_count == 0


@pytest.mark.asyncio
async def test_closed_step_is_ignored(db, open_row):
    from app.services import step_engine

    job = _timer(db, open_row, JobType.STEP_ESCALATION)
    step_engine.skip_step(db, open_row.id)

    await reminders.process_step_escalation(db, job)

    db.refresh(open_row)
    assert open_row.escalated_at is None


@pytest.mark.asyncio
async def test_overdue_check_dispatches_webhook(db, open_row, test_org):
    db.add(WebhookEndpoint(organization_id=test_org.id, url="https://h.example.com", secret="s"))
    open_row.due_at = utcnow() - timedelta(days=1)
    db.commit()

    await reminders.process_step_overdue_check(db, _timer(db, open_row, JobType.STEP_OVERDUE_CHECK))

    events = [
        job.payload["body"]["event"]
        for job in db.query(Job).filter(Job.job_type == JobType.WEBHOOK_DELIVERY.value)
    ]
    assert "step.overdue" in events


@pytest.mark.asyncio
async def test_overdue_check_before_due_does_nothing(db, open_row, test_org):
    db.add(WebhookEndpoint(organization_id=test_org.id, url="https://h.example.com", secret="s"))
    open_row.due_at = utcnow() + timedelta(days=1)
    db.commit()

    await reminders.process_step_overdue_check(db, _timer(db, open_row, JobType.STEP_OVERDUE_CHECK))

    assert db.query(Job).filter(Job.job_type == JobType.WEBHOOK_DELIVERY.value).count() == 0


@pytest.mark.asyncio
async def test_escalation_notifies_coordinator(db, open_row):
    await reminders.process_step_escalation(db, _timer(db, open_row, JobType.STEP_ESCALATION))

    db.refresh(open_row)
    assert open_row.escalated_at is not None
    assert len(_emails_to(db, "coordinator@test.com")) == 1
    assert AuditAction.STEP_ESCALATED.value in _actions(db, open_row.flow_run_id)
