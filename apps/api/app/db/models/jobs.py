"""Background jobs table."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.enums import DEFAULT_JOB_STATUS
from app.db.types import new_id, utcnow


class Job(Base):
    """
    Background job for async processing.

    Used for: email sending, step reminders, overdue checks, escalations
    and outgoing webhook delivery. Worker polls for pending jobs and processes them.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "idx_jobs_pending",
            "status",
            "run_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_jobs_org", "organization_id", "created_at"),
        Index("idx_jobs_step_exec", "step_execution_id"),
        Index("uq_job_idempotency", "idempotency_key", unique=True),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(nullable=False, default=dict)
    run_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_JOB_STATUS.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Step-scoped jobs (reminders, escalations) are cancelled when the step closes
    step_execution_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("step_executions.id", ondelete="CASCADE"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Idempotency key for deduplication (NULLs never collide)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
