"""Flow, run and step lifecycle enums."""

from enum import Enum


class FlowStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class FlowRunStatus(str, Enum):
    """Run lifecycle: IN_PROGRESS -> COMPLETED | CANCELLED."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class StepExecutionStatus(str, Enum):
    """Step lifecycle: PENDING -> IN_PROGRESS -> COMPLETED | SKIPPED."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"

    @classmethod
    def open_values(cls) -> tuple[str, str]:
        return (cls.PENDING.value, cls.IN_PROGRESS.value)


class StepType(str, Enum):
    """Step kinds understood by the execution engine."""

    # Human actions
    FORM = "FORM"
    QUESTIONNAIRE = "QUESTIONNAIRE"
    FILE_REQUEST = "FILE_REQUEST"
    TODO = "TODO"
    APPROVAL = "APPROVAL"
    ACKNOWLEDGEMENT = "ACKNOWLEDGEMENT"
    ESIGN = "ESIGN"
    DECISION = "DECISION"
    CUSTOM_ACTION = "CUSTOM_ACTION"
    WEB_APP = "WEB_APP"
    PDF_FORM = "PDF_FORM"

    # Control flow
    SINGLE_CHOICE_BRANCH = "SINGLE_CHOICE_BRANCH"
    MULTI_CHOICE_BRANCH = "MULTI_CHOICE_BRANCH"
    PARALLEL_BRANCH = "PARALLEL_BRANCH"
    GOTO = "GOTO"
    GOTO_DESTINATION = "GOTO_DESTINATION"
    TERMINATE = "TERMINATE"
    WAIT = "WAIT"
    SUB_FLOW = "SUB_FLOW"

    # Automations (completed by an external caller)
    AI_AUTOMATION = "AI_AUTOMATION"
    AI_CUSTOM_PROMPT = "AI_CUSTOM_PROMPT"
    AI_EXTRACT = "AI_EXTRACT"
    AI_SUMMARIZE = "AI_SUMMARIZE"
    AI_TRANSCRIBE = "AI_TRANSCRIBE"
    AI_TRANSLATE = "AI_TRANSLATE"
    AI_WRITE = "AI_WRITE"
    SYSTEM_WEBHOOK = "SYSTEM_WEBHOOK"
    SYSTEM_EMAIL = "SYSTEM_EMAIL"
    SYSTEM_CHAT_MESSAGE = "SYSTEM_CHAT_MESSAGE"
    SYSTEM_UPDATE_WORKSPACE = "SYSTEM_UPDATE_WORKSPACE"
    BUSINESS_RULE = "BUSINESS_RULE"
    INTEGRATION_AIRTABLE = "INTEGRATION_AIRTABLE"
    INTEGRATION_CLICKUP = "INTEGRATION_CLICKUP"
    INTEGRATION_DROPBOX = "INTEGRATION_DROPBOX"
    INTEGRATION_GMAIL = "INTEGRATION_GMAIL"
    INTEGRATION_GOOGLE_DRIVE = "INTEGRATION_GOOGLE_DRIVE"
    INTEGRATION_GOOGLE_SHEETS = "INTEGRATION_GOOGLE_SHEETS"
    INTEGRATION_WRIKE = "INTEGRATION_WRIKE"


BRANCH_STEP_TYPES = frozenset(
    {
        StepType.SINGLE_CHOICE_BRANCH.value,
        StepType.MULTI_CHOICE_BRANCH.value,
        StepType.PARALLEL_BRANCH.value,
    }
)

# Step types that wait for something outside the system to complete them.
EXTERNAL_STEP_PREFIXES = ("AI_", "SYSTEM_", "INTEGRATION_")
EXTERNAL_STEP_TYPES = frozenset(
    {
        StepType.WAIT.value,
        StepType.SUB_FLOW.value,
        StepType.BUSINESS_RULE.value,
    }
)


class DueUnit(str, Enum):
    HOURS = "HOURS"
    DAYS = "DAYS"
    WEEKS = "WEEKS"


class DueMode(str, Enum):
    RELATIVE = "RELATIVE"
    FIXED = "FIXED"
    BEFORE_FLOW_DUE = "BEFORE_FLOW_DUE"


class TerminateStatus(str, Enum):
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ContactType(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    ASSIGNEE = "ASSIGNEE"


class ContactStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


# Assignee sentinel meaning "whoever started the run".
COORDINATOR_ROLE = "__coordinator__"


class ConditionOperator(str, Enum):
    """Branch path condition operators. Comparisons are case-insensitive."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    NOT_EMPTY = "not_empty"
    IN = "in"
    NOT_IN = "not_in"
