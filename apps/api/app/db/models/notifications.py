"""Delivery log and organization webhook endpoints."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import new_id, utcnow


class WebhookEndpoint(Base):
    """Organization-owned URL that receives signed lifecycle events."""

    __tablename__ = "webhook_endpoints"
    __table_args__ = (Index("idx_webhook_endpoints_org", "organization_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    # Empty list = all events
    events: Mapped[list] = mapped_column(default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class NotificationLog(Base):
    """Delivery record for emails and outgoing webhooks."""

    __tablename__ = "notification_log"
    __table_args__ = (
        Index("idx_notification_log_run", "flow_run_id"),
        Index("idx_notification_log_org_sent", "organization_id", "sent_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    flow_run_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("flow_runs.id", ondelete="CASCADE"),
        nullable=True,
    )
    step_execution_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("step_executions.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
