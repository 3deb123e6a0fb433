"""Centralized defaults for enums."""

from app.db.enums.flows import FlowRunStatus, StepExecutionStatus
from app.db.enums.jobs import JobStatus


DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
DEFAULT_RUN_STATUS: FlowRunStatus = FlowRunStatus.IN_PROGRESS
DEFAULT_STEP_STATUS: StepExecutionStatus = StepExecutionStatus.PENDING
