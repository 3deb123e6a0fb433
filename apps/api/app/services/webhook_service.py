"""Outgoing webhooks - signed lifecycle events for runs.

Endpoints come from two places: the flow definition's notification settings
(per flow) and the organization's ``webhook_endpoints`` rows. Each matching
endpoint gets a WEBHOOK_DELIVERY job; the worker POSTs the JSON body with an
HMAC-SHA256 signature and records the outcome in notification_log.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.structured_logging import build_log_context
from app.db.enums import JobType, NotificationChannel, NotificationStatus, WebhookEvent
from app.db.models import Flow, FlowRun, Job, NotificationLog, StepExecution, WebhookEndpoint
from app.db.types import utcnow
from app.jobs.utils import safe_url
from app.schemas.flow_definition import FlowDefinition
from app.services import audit_service, job_service
from app.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
WEBHOOK_ID_HEADER = "X-Webhook-Id"
EVENT_HEADER = "X-Webhook-Event"


class WebhookDeliveryError(Exception):
    """Endpoint answered with a non-2xx status or could not be reached."""


def sign_payload(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def verify_signature(body: str, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(body, secret), signature or "")


def build_payload(
    event: WebhookEvent,
    flow: Flow,
    run: FlowRun | None = None,
    step_execution: StepExecution | None = None,
    step_name: str | None = None,
    metadata: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event.value,
        "timestamp": (now or utcnow()).isoformat(),
        "flow": {"id": flow.id, "name": flow.name},
        "metadata": metadata or {},
    }
    if run is not None:
        payload["flowRun"] = {"id": run.id, "name": run.name, "status": run.status}
    if step_execution is not None:
        payload["step"] = {
            "id": step_execution.step_id,
            "name": step_name or step_execution.step_id,
            "index": step_execution.step_index,
        }
    return payload


def _targets(
    db: Session, event: WebhookEvent, run: FlowRun, definition: FlowDefinition | None
) -> list[dict[str, Any]]:
    targets: list[dict[str, Any]] = []
    if definition is not None:
        for index, endpoint in enumerate(definition.settings.webhook_endpoints):
            if endpoint.subscribes_to(event.value):
                targets.append(
                    {
                        "kind": "flow",
                        "flow_id": run.flow_id,
                        "endpoint_index": index,
                        "endpoint_id": endpoint.endpoint_id,
                        "url": endpoint.url,
                    }
                )
    rows = (
        db.query(WebhookEndpoint)
        .filter(
            WebhookEndpoint.organization_id == run.organization_id,
            WebhookEndpoint.is_active.is_(True),
        )
        .all()
    )
    for row in rows:
        if not row.events or event.value in row.events:
            targets.append({"kind": "org", "endpoint_id": row.id, "url": row.url})
    return targets


def dispatch(
    db: Session,
    event: WebhookEvent,
    run: FlowRun,
    definition: FlowDefinition | None = None,
    step_execution: StepExecution | None = None,
    step_name: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> list[Job]:
    """Queue one delivery job per subscribed endpoint. Does not commit."""
    targets = _targets(db, event, run, definition)
    if not targets:
        return []

    payload = build_payload(
        event,
        run.flow,
        run=run,
        step_execution=step_execution,
        step_name=step_name,
        metadata=metadata,
    )
    jobs = []
    for target in targets:
        jobs.append(
            job_service.schedule_job(
                db,
                org_id=run.organization_id,
                job_type=JobType.WEBHOOK_DELIVERY,
                payload={
                    "target": target,
                    "body": payload,
                    "flow_run_id": run.id,
                    "step_execution_id": step_execution.id if step_execution else None,
                },
            )
        )
    logger.info(
        "Queued %s %s deliveries",
        len(jobs),
        event.value,
        extra=build_log_context(run_id=run.id, org_id=run.organization_id),
    )
    return jobs


def resolve_secret(db: Session, target: dict[str, Any]) -> str | None:
    """Look up the signing secret at delivery time (secrets never sit in job payloads)."""
    if target.get("kind") == "org":
        row = db.query(WebhookEndpoint).filter(WebhookEndpoint.id == target.get("endpoint_id")).first()
        return row.secret if row and row.is_active else None

    from app.services import flow_service

    flow = flow_service.get_flow(db, target.get("flow_id"))
    if not flow:
        return None
    endpoints = flow_service.get_definition(flow).settings.webhook_endpoints
    index = target.get("endpoint_index")
    if not isinstance(index, int) or index >= len(endpoints):
        return None
    endpoint = endpoints[index]
    if endpoint.url != target.get("url") or not endpoint.enabled:
        return None
    return endpoint.secret


async def deliver(
    url: str,
    body: dict[str, Any],
    secret: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    """POST a signed webhook body.

    Raises:
        WebhookDeliveryError: Transport failure or non-2xx response.
    """
    raw = audit_service.canonical_json(body)
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(raw, secret),
        WEBHOOK_ID_HEADER: str(uuid.uuid4()),
        EVENT_HEADER: str(body.get("event", "")),
    }
    try:
        async with httpx.AsyncClient(
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS, transport=transport
        ) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(url, content=raw.encode(), headers=headers)

            response = await request_with_retries(request_fn, max_attempts=2)
    except httpx.RequestError as exc:
        raise WebhookDeliveryError(
            f"Webhook delivery to {safe_url(url)} failed: {exc.__class__.__name__}"
        ) from exc

    if not 200 <= response.status_code < 300:
        raise WebhookDeliveryError(
            f"Webhook delivery to {safe_url(url)} returned {response.status_code}"
        )
    return response


def record_delivery(
    db: Session,
    *,
    org_id: str,
    event_type: str,
    recipient: str,
    status: NotificationStatus,
    channel: NotificationChannel = NotificationChannel.WEBHOOK,
    flow_run_id: str | None = None,
    step_execution_id: str | None = None,
    error_message: str | None = None,
) -> NotificationLog:
    entry = NotificationLog(
        organization_id=org_id,
        channel=channel.value,
        event_type=event_type,
        recipient=recipient,
        flow_run_id=flow_run_id,
        step_execution_id=step_execution_id,
        status=status.value,
        error_message=error_message[:1000] if error_message else None,
    )
    db.add(entry)
    db.flush()
    return entry
