"""Job service - background job scheduling and processing state.

The jobs table is the scheduler for step timers (reminders, overdue checks,
escalations) as well as outbound email and webhook delivery. Scheduling only
flushes; callers commit as part of their own unit of work.
"""

from datetime import datetime

from sqlalchemy.orm import Session

from app.db.enums import STEP_SCOPED_JOB_TYPES, JobStatus, JobType
from app.db.models import Job
from app.db.types import utcnow


def schedule_job(
    db: Session,
    org_id: str,
    job_type: JobType,
    payload: dict,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    step_execution_id: str | None = None,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If a job with the same idempotency_key already exists it is returned
    unchanged instead of creating a duplicate.
    """
    if idempotency_key:
        existing = db.query(Job).filter(Job.idempotency_key == idempotency_key).first()
        if existing:
            return existing

    job = Job(
        organization_id=org_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or utcnow(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
        step_execution_id=step_execution_id,
    )
    db.add(job)
    db.flush()
    return job


def get_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = now or utcnow()
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def get_job(db: Session, job_id: str, org_id: str | None = None) -> Job | None:
    """Get a job by ID, optionally scoped to org."""
    query = db.query(Job).filter(Job.id == job_id)
    if org_id:
        query = query.filter(Job.organization_id == org_id)
    return query.first()


def list_jobs(
    db: Session,
    org_id: str | None = None,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    step_execution_id: str | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters, oldest run_at first."""
    query = db.query(Job)
    if org_id:
        query = query.filter(Job.organization_id == org_id)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    if step_execution_id:
        query = query.filter(Job.step_execution_id == step_execution_id)
    return query.order_by(Job.run_at).limit(limit).all()


def cancel_step_jobs(db: Session, step_execution_id: str) -> int:
    """Cancel pending jobs tied to a step execution. Returns the number cancelled."""
    jobs = (
        db.query(Job)
        .filter(
            Job.step_execution_id == step_execution_id,
            Job.job_type.in_(STEP_SCOPED_JOB_TYPES),
            Job.status == JobStatus.PENDING.value,
        )
        .all()
    )
    for job in jobs:
        job.status = JobStatus.CANCELLED.value
        job.completed_at = utcnow()
    db.flush()
    return len(jobs)


def mark_job_running(db: Session, job: Job) -> Job:
    """Mark a job as running (increment attempts)."""
    job.status = JobStatus.RUNNING.value
    job.attempts += 1
    db.commit()
    db.refresh(job)
    return job


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = utcnow()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error[:2000]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = utcnow()
    db.commit()
    db.refresh(job)
    return job
