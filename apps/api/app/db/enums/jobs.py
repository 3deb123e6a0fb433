"""Job-related enums."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""

    SEND_EMAIL = "send_email"
    STEP_REMINDER = "step_reminder"
    STEP_OVERDUE_CHECK = "step_overdue_check"
    STEP_ESCALATION = "step_escalation"
    WEBHOOK_DELIVERY = "webhook_delivery"


# Jobs tied to a single step execution; cancelled when the step closes.
STEP_SCOPED_JOB_TYPES = frozenset(
    {
        JobType.STEP_REMINDER.value,
        JobType.STEP_OVERDUE_CHECK.value,
        JobType.STEP_ESCALATION.value,
    }
)


class JobStatus(str, Enum):
    """Status of background jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
