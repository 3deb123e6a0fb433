"""Enum definitions for application constants."""

from app.db.enums.audit import AuditAction
from app.db.enums.defaults import (
    DEFAULT_JOB_STATUS,
    DEFAULT_RUN_STATUS,
    DEFAULT_STEP_STATUS,
)
from app.db.enums.flows import (
    BRANCH_STEP_TYPES,
    COORDINATOR_ROLE,
    ConditionOperator,
    EXTERNAL_STEP_PREFIXES,
    EXTERNAL_STEP_TYPES,
    ContactStatus,
    ContactType,
    DueMode,
    DueUnit,
    FlowRunStatus,
    FlowStatus,
    StepExecutionStatus,
    StepType,
    TerminateStatus,
)
from app.db.enums.jobs import JobStatus, JobType, STEP_SCOPED_JOB_TYPES
from app.db.enums.notifications import (
    NotificationChannel,
    NotificationStatus,
    WebhookEvent,
)

__all__ = [
    "AuditAction",
    "BRANCH_STEP_TYPES",
    "COORDINATOR_ROLE",
    "ConditionOperator",
    "ContactStatus",
    "ContactType",
    "DEFAULT_JOB_STATUS",
    "DEFAULT_RUN_STATUS",
    "DEFAULT_STEP_STATUS",
    "DueMode",
    "DueUnit",
    "EXTERNAL_STEP_PREFIXES",
    "EXTERNAL_STEP_TYPES",
    "FlowRunStatus",
    "FlowStatus",
    "JobStatus",
    "JobType",
    "NotificationChannel",
    "NotificationStatus",
    "STEP_SCOPED_JOB_TYPES",
    "StepExecutionStatus",
    "StepType",
    "WebhookEvent",
]
