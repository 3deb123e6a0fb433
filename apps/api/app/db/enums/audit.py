"""Run audit trail enums."""

from enum import Enum


class AuditAction(str, Enum):
    """
    Actions recorded against a flow run.

    Groups:
    - WEBHOOK_*: Run started from an inbound webhook
    - STEP_*: Step lifecycle
    - BRANCH_* / GOTO_*: Control flow decisions
    - FLOW_*: Run lifecycle
    """

    WEBHOOK_FLOW_STARTED = "WEBHOOK_FLOW_STARTED"

    STEP_ACTIVATED = "STEP_ACTIVATED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_SKIPPED = "STEP_SKIPPED"
    STEP_ESCALATED = "STEP_ESCALATED"
    REMINDER_SENT = "REMINDER_SENT"

    BRANCH_RESOLVED = "BRANCH_RESOLVED"
    GOTO_JUMPED = "GOTO_JUMPED"
    GOTO_LIMIT_REACHED = "GOTO_LIMIT_REACHED"

    FLOW_COMPLETED = "FLOW_COMPLETED"
    FLOW_TERMINATED = "FLOW_TERMINATED"
    FLOW_CANCELLED = "FLOW_CANCELLED"
