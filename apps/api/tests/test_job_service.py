from datetime import datetime, timedelta, timezone

from app.db.enums import JobStatus, JobType
from app.db.models import StepExecution
from app.services import flow_run_service, job_service

NOW = datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_schedule_job_is_idempotent(db, test_org):
    first = job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.STEP_REMINDER,
        payload={"step_execution_id": "se-1"},
        idempotency_key="step_reminder:se-1:0",
    )
    second = job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.STEP_REMINDER,
        payload={"step_execution_id": "se-1", "other": True},
        idempotency_key="step_reminder:se-1:0",
    )
    assert first.id == second.id
    assert second.payload == {"step_execution_id": "se-1"}


def test_get_pending_jobs_only_returns_due(db, test_org):
    due = job_service.schedule_job(
        db, org_id=test_org.id, job_type=JobType.SEND_EMAIL, payload={}, run_at=NOW
    )
    job_service.schedule_job(
        db,
        org_id=test_org.id,
        job_type=JobType.SEND_EMAIL,
        payload={},
        run_at=NOW + timedelta(hours=1),
    )

    pending = job_service.get_pending_jobs(db, limit=10, now=NOW)
    assert [job.id for job in pending] == [due.id]


def test_mark_job_failed_retries_until_max_attempts(db, test_org):
    job = job_service.schedule_job(
        db, org_id=test_org.id, job_type=JobType.WEBHOOK_DELIVERY, payload={}
    )
    db.commit()

    for attempt in range(1, 4):
        job_service.mark_job_running(db, job)
        job = job_service.mark_job_failed(db, job, "boom")
        expected = JobStatus.PENDING.value if attempt < 3 else JobStatus.FAILED.value
        assert job.status == expected
        assert job.attempts == attempt

    assert job.last_error == "boom"
    assert job.completed_at is not None


def test_cancel_step_jobs_only_touches_step_timers(db, make_flow):
    flow = make_flow({"steps": [{"id": "s1"}]})
    run = flow_run_service.start_run(db, flow.id)
    row = db.query(StepExecution).filter(StepExecution.flow_run_id == run.id).one()

    reminder = job_service.schedule_job(
        db,
        org_id=run.organization_id,
        job_type=JobType.STEP_REMINDER,
        payload={},
        step_execution_id=row.id,
    )
    email = job_service.schedule_job(
        db,
        org_id=run.organization_id,
        job_type=JobType.SEND_EMAIL,
        payload={},
        step_execution_id=row.id,
    )
    db.commit()

    assert job_service.cancel_step_jobs(db, row.id) == 1
    assert reminder.status == JobStatus.CANCELLED.value
    assert email.status == JobStatus.PENDING.value

def test_list_jobs_filters(db, test_org):
    job_service.schedule_job(db, org_id=test_org.id, job_type=JobType.SEND_EMAIL, payload={})
    job_service.schedule_job(db, org_id=test_org.id, job_type=JobType.WEBHOOK_DELIVERY, payload={})
    db.commit()

    emails = job_service.list_jobs(db, org_id=test_org.id, job_type=JobType.SEND_EMAIL)
    assert [job.job_type for job in emails] == [JobType.SEND_EMAIL.value]
    assert len(job_service.list_jobs(db, status=JobStatus.PENDING)) == 2
