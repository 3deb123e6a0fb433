"""Outgoing webhook delivery handler."""

from __future__ import annotations

import logging

from app.db.enums import NotificationStatus
from app.jobs.utils import safe_url
from app.services import webhook_service

logger = logging.getLogger(__name__)


async def process_webhook_delivery(db, job) -> None:
    """
    POST a signed lifecycle event to one endpoint.

    Payload:
        - target: which endpoint (org row or flow definition entry) and its url
        - body: the event payload, signed as sent
    """
    payload = job.payload or {}
    target = payload.get("target") or {}
    body = payload.get("body") or {}
    url = target.get("url")
    if not url or not body:
        raise Exception("Missing target url or body in webhook delivery payload")

    log_fields = {
        "org_id": job.organization_id,
        "event_type": body.get("event") or "webhook",
        "recipient": safe_url(url),
        "flow_run_id": payload.get("flow_run_id"),
        "step_execution_id": payload.get("step_execution_id"),
    }

    secret = webhook_service.resolve_secret(db, target)
    if secret is None:
        logger.info("Webhook endpoint %s no longer active, skipping", safe_url(url))
        webhook_service.record_delivery(db, status=NotificationStatus.SKIPPED, **log_fields)
        db.commit()
        return

    try:
        await webhook_service.deliver(url, body, secret)
    except webhook_service.WebhookDeliveryError as exc:
        webhook_service.record_delivery(
            db, status=NotificationStatus.FAILED, error_message=str(exc), **log_fields
        )
        db.commit()
        raise

    webhook_service.record_delivery(db, status=NotificationStatus.SENT, **log_fields)
    db.commit()
    logger.info("Webhook %s delivered to %s", body.get("event"), safe_url(url))
