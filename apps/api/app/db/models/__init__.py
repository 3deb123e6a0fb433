"""SQLAlchemy ORM models."""

from app.db.models.audit import AuditLog
from app.db.models.auth import Contact, Organization, User
from app.db.models.flows import Flow, FlowRun, MagicLink, StepExecution
from app.db.models.jobs import Job
from app.db.models.notifications import NotificationLog, WebhookEndpoint

__all__ = [
    "AuditLog",
    "Contact",
    "Flow",
    "FlowRun",
    "Job",
    "MagicLink",
    "NotificationLog",
    "Organization",
    "StepExecution",
    "User",
    "WebhookEndpoint",
]
