"""Flows, runs, step executions and magic links."""

from __future__ import annotations

from typing import TYPE_CHECKING

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.enums import DEFAULT_RUN_STATUS, DEFAULT_STEP_STATUS, FlowStatus
from app.db.types import new_id, utcnow

if TYPE_CHECKING:
    from app.db.models import AuditLog, Contact, Organization, User


class Flow(Base):
    """
    A flow template. `definition` holds the step graph as a JSON document
    (see app.schemas.flow_definition for the accepted shape).
    """

    __tablename__ = "flows"
    __table_args__ = (Index("idx_flows_org", "organization_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=FlowStatus.DRAFT.value, nullable=False
    )
    definition: Mapped[dict | None] = mapped_column(nullable=True)
    organization_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
    )
    created_by_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, nullable=False
    )

    organization: Mapped["Organization | None"] = relationship()
    created_by: Mapped["User | None"] = relationship()
    runs: Mapped[list["FlowRun"]] = relationship(back_populates="flow")


class FlowRun(Base):
    """
    One execution of a flow.

    Step rows are created for every top-level step when the run starts;
    rows for steps nested inside branch paths are created when a path is entered.
    """

    __tablename__ = "flow_runs"
    __table_args__ = (
        Index("idx_flow_runs_flow", "flow_id"),
        Index("idx_flow_runs_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    flow_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("flows.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_RUN_STATUS.value, nullable=False
    )
    is_sample: Mapped[bool] = mapped_column(default=False, nullable=False)
    current_step_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id"),
        nullable=False,
    )
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role_assignments: Mapped[dict] = mapped_column(default=dict, nullable=False)
    kickoff_data: Mapped[dict | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(nullable=True)

    flow: Mapped["Flow"] = relationship(back_populates="runs")
    started_by: Mapped["User"] = relationship()
    organization: Mapped["Organization"] = relationship()
    step_executions: Mapped[list["StepExecution"]] = relationship(
        back_populates="flow_run",
        cascade="all, delete-orphan",
        order_by="StepExecution.step_index",
    )
    audit_logs: Mapped[list["AuditLog"]] = relationship(
        back_populates="flow_run",
        cascade="all, delete-orphan",
    )


class StepExecution(Base):
    """
    Runtime state of one definition step within a run.

    Identity is (flow_run_id, step_id). `branch_path` is NULL on the main path
    and holds the scope key ("<branchStepId>/<pathId>", nested with "::")
    for steps inside a branch path. Re-entering a step (goto loop, branch
    re-entry) resets the row and bumps `iteration`.
    """

    __tablename__ = "step_executions"
    __table_args__ = (
        UniqueConstraint("flow_run_id", "step_id", name="uq_step_exec_run_step"),
        CheckConstraint(
            "assigned_to_user_id IS NULL OR assigned_to_contact_id IS NULL",
            name="ck_step_exec_single_assignee",
        ),
        Index("idx_step_exec_run_status", "flow_run_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    flow_run_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("flow_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    branch_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_STEP_STATUS.value, nullable=False
    )
    iteration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    assigned_to_user_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to_contact_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True,
    )

    result_data: Mapped[dict | None] = mapped_column(nullable=True)
    # Branch bookkeeping: selectedPathIds, completedPathIds, jumps
    branch_state: Mapped[dict | None] = mapped_column(nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    flow_run: Mapped["FlowRun"] = relationship(back_populates="step_executions")
    assigned_contact: Mapped["Contact | None"] = relationship()
    assigned_user: Mapped["User | None"] = relationship()
    magic_links: Mapped[list["MagicLink"]] = relationship(
        back_populates="step_execution",
        cascade="all, delete-orphan",
    )


class MagicLink(Base):
    """Single-use, expiring token that lets a contact act on one step without an account."""

    __tablename__ = "magic_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    step_execution_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("step_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    step_execution: Mapped["StepExecution"] = relationship(back_populates="magic_links")
