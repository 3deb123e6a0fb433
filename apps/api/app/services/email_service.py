"""Email service - built-in templates and queued sending.

Emails are never sent inline: each send becomes a SEND_EMAIL job that the
worker delivers through Resend and records in notification_log.
"""

import html
import re

from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.enums import JobType
from app.db.models import Job
from app.services.job_service import schedule_job


# Variable pattern for template substitution: {{variable_name}}
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

TASK_ASSIGNED_SUBJECT = "Action needed: {{step_name}} ({{flow_name}})"
TASK_ASSIGNED_BODY = """\
<p>Hi {{contact_name}},</p>
<p>You have a new task in <strong>{{flow_name}}</strong>: <strong>{{step_name}}</strong>.</p>
<p><a href="{{task_url}}">Open your task</a></p>
<p>This link is personal to you. Please do not forward it.</p>
"""

STEP_REMINDER_SUBJECT = "Reminder: {{step_name}} is due soon"
STEP_REMINDER_BODY = """\
<p>Hi {{recipient_name}},</p>
<p>This is a reminder that <strong>{{step_name}}</strong> in <strong>{{run_name}}</strong>
is due {{due_at}}.</p>
"""

STEP_ESCALATION_SUBJECT = "Overdue: {{step_name}} in {{run_name}}"
STEP_ESCALATION_BODY = """\
<p>Hi {{recipient_name}},</p>
<p><strong>{{step_name}}</strong> in <strong>{{run_name}}</strong> was due {{due_at}}
and has not been completed.</p>
"""


def render_template(
    subject: str,
    body: str,
    variables: dict[str, str],
) -> tuple[str, str]:
    """
    Render a template with variable substitution.

    Variables in format {{variable_name}} are replaced with values; body
    values are HTML-escaped. Missing variables are replaced with empty string.

    Returns (rendered_subject, rendered_body).
    """
    def replace_subject(match: re.Match) -> str:
        return str(variables.get(match.group(1), ""))

    def replace_body(match: re.Match) -> str:
        return html.escape(str(variables.get(match.group(1), "")))

    rendered_subject = VARIABLE_PATTERN.sub(replace_subject, subject)
    rendered_body = VARIABLE_PATTERN.sub(replace_body, body)
    return rendered_subject, rendered_body


def task_url(token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/task/{token}"


def queue_email(
    db: Session,
    *,
    org_id: str,
    to: str,
    subject: str,
    body: str,
    event_type: str,
    flow_run_id: str | None = None,
    step_execution_id: str | None = None,
    idempotency_key: str | None = None,
) -> Job:
    """Schedule a SEND_EMAIL job. Does not commit."""
    return schedule_job(
        db,
        org_id=org_id,
        job_type=JobType.SEND_EMAIL,
        payload={
            "to": to,
            "subject": subject,
            "html": body,
            "event_type": event_type,
            "flow_run_id": flow_run_id,
            "step_execution_id": step_execution_id,
        },
        idempotency_key=idempotency_key,
    )


def send_magic_link(
    db: Session,
    *,
    org_id: str,
    to: str,
    contact_name: str,
    step_name: str,
    flow_name: str,
    token: str,
    flow_run_id: str | None = None,
    step_execution_id: str | None = None,
) -> Job:
    """Queue the "you have a task" email carrying the assignee's magic link."""
    subject, body = render_template(
        TASK_ASSIGNED_SUBJECT,
        TASK_ASSIGNED_BODY,
        {
            "contact_name": contact_name,
            "step_name": step_name,
            "flow_name": flow_name,
            "task_url": task_url(token),
        },
    )
    return queue_email(
        db,
        org_id=org_id,
        to=to,
        subject=subject,
        body=body,
        event_type="task_assigned",
        flow_run_id=flow_run_id,
        step_execution_id=step_execution_id,
        idempotency_key=f"magic-link-email:{token}",
    )
