"""Run audit trail table."""

from __future__ import annotations

from typing import TYPE_CHECKING

from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.types import new_id, utcnow

if TYPE_CHECKING:
    from app.db.models import FlowRun


class AuditLog(Base):
    """
    Append-only record of what happened to a run.

    Security:
    - Never stores secrets/tokens
    - Contact emails in details are hashed
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_run_created", "flow_run_id", "created_at"),
        Index("idx_audit_run_sequence", "flow_run_id", "sequence"),
        Index("idx_audit_action", "action"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    flow_run_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("flow_runs.id", ondelete="CASCADE"),
        nullable=True,
    )
    # Per-run write order; created_at alone ties within one transaction
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    details: Mapped[dict | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    flow_run: Mapped["FlowRun | None"] = relationship(back_populates="audit_logs")
