"""Audit logging service - append-only trail of what happened to a run.

Audit writes are best effort: a failure is logged and swallowed so the
operation being audited never fails because of its audit record.

Security guidelines:
- NEVER log secrets (tokens, webhook secrets)
- Hash contact emails in details (use hash_email)
- Use IDs instead of raw data where possible
"""

import hashlib
import json
import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.structured_logging import build_log_context
from app.db.enums import AuditAction
from app.db.models import AuditLog

logger = logging.getLogger(__name__)


def hash_email(email: str) -> str:
    """Hash email for logs (prefix + SHA256 suffix for debugging)."""
    if not email:
        return ""
    prefix = email.split("@")[0][:3] if "@" in email else email[:3]
    suffix = hashlib.sha256(email.lower().encode()).hexdigest()[:12]
    return f"{prefix}...@[hash:{suffix}]"


def canonical_json(obj: dict | None) -> str:
    """
    Serialize object to canonical JSON.

    Uses sorted keys, compact separators, and str() for non-JSON types.
    Webhook signatures are computed over this exact form.
    """
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def _next_sequence(db: Session, flow_run_id: str | None) -> int:
    if not flow_run_id:
        return 0
    current = (
        db.query(func.max(AuditLog.sequence))
        .filter(AuditLog.flow_run_id == flow_run_id)
        .scalar()
    )
    return (current or 0) + 1


def log_action(
    db: Session,
    flow_run_id: str | None,
    action: AuditAction,
    details: dict[str, Any] | None = None,
    actor_id: str | None = None,
    actor_email: str | None = None,
) -> AuditLog | None:
    """
    Append an audit record for a run.

    The insert runs inside a savepoint; on failure the savepoint is rolled
    back, the error is logged and None is returned. The caller commits.

    Args:
        db: Database session
        flow_run_id: Run the action applies to
        action: What happened (from AuditAction)
        details: Additional context (no secrets/raw PII)
        actor_id: User id, contact id or "system"
        actor_email: Actor email, stored as given for coordinator display
    """
    entry = AuditLog(
        flow_run_id=flow_run_id,
        action=action.value,
        actor_id=actor_id,
        actor_email=actor_email,
        details=json.loads(canonical_json(details)) if details else None,
    )
    try:
        with db.begin_nested():
            entry.sequence = _next_sequence(db, flow_run_id)
            db.add(entry)
            db.flush()
    except SQLAlchemyError:
        logger.warning(
            "Audit write failed for action %s",
            action.value,
            exc_info=True,
            extra=build_log_context(run_id=flow_run_id),
        )
        return None
    return entry


def list_run_audit(db: Session, flow_run_id: str) -> list[AuditLog]:
    """Audit records for a run in the order they were written."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.flow_run_id == flow_run_id)
        .order_by(AuditLog.sequence, AuditLog.created_at)
        .all()
    )
