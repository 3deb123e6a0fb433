"""Notification-related enums."""

from enum import Enum


class WebhookEvent(str, Enum):
    """Outgoing lifecycle events delivered to organization webhook endpoints."""

    FLOW_STARTED = "flow.started"
    STEP_COMPLETED = "step.completed"
    FLOW_COMPLETED = "flow.completed"
    FLOW_CANCELLED = "flow.cancelled"
    STEP_OVERDUE = "step.overdue"
    STEP_ESCALATED = "step.escalated"


class NotificationChannel(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"


class NotificationStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
