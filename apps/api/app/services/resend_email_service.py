"""Resend Email Service.

Sends transactional emails (task links, reminders, escalations) via the
Resend API with idempotency and retry logic. Without an API key, sends are
logged and skipped (dry run).
"""

from __future__ import annotations

import html as html_module
import logging
import re

import httpx

from app.core.config import settings
from app.services.http_service import DEFAULT_RETRY_STATUSES, request_with_retries
from app.jobs.utils import mask_email

logger = logging.getLogger(__name__)

RESEND_SEND_URL = "https://api.resend.com/emails"
RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0
RESEND_TIMEOUT_SECONDS = 20.0


class EmailSendError(Exception):
    """Resend rejected the message or could not be reached."""


def html_to_text(content: str) -> str:
    """Plain-text alternative for the HTML body."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html_module.unescape(text)


async def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    idempotency_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """
    Send one email via Resend.

    Returns:
        The provider message id, or None for a dry run.

    Raises:
        EmailSendError: Non-2xx response after retries, or connection failure.
    """
    if not settings.RESEND_API_KEY:
        logger.info("[DRY RUN] Email send skipped for %s", mask_email(to))
        return None

    payload: dict[str, object] = {
        "from": settings.EMAIL_FROM,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    text = html_to_text(html)
    if text:
        payload["text"] = text

    headers = {
        "Authorization": f"Bearer {settings.RESEND_API_KEY}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["Idempotency-Key"] = idempotency_key

    try:
        async with httpx.AsyncClient(
            timeout=RESEND_TIMEOUT_SECONDS, transport=transport
        ) as client:

            async def request_fn() -> httpx.Response:
                return await client.post(RESEND_SEND_URL, headers=headers, json=payload)

            response = await request_with_retries(
                request_fn,
                max_attempts=RESEND_MAX_ATTEMPTS,
                base_delay=RESEND_RETRY_BASE_DELAY,
                max_delay=RESEND_RETRY_MAX_DELAY,
                retry_statuses=DEFAULT_RETRY_STATUSES,
            )
    except httpx.TimeoutException as exc:
        raise EmailSendError("Connection timeout") from exc
    except httpx.RequestError as exc:
        raise EmailSendError(f"Connection error: {exc.__class__.__name__}") from exc

    # 409 = idempotency conflict, the message was already accepted
    if 200 <= response.status_code < 300 or response.status_code == 409:
        message_id = None
        try:
            data = response.json()
            if isinstance(data, dict) and isinstance(data.get("id"), str):
                message_id = data["id"]
        except ValueError:
            pass
        logger.info("Email sent to %s, message_id=%s", mask_email(to), message_id)
        return message_id

    error_detail = None
    try:
        data = response.json()
        if isinstance(data, dict):
            error_detail = data.get("message") or data.get("error")
    except ValueError:
        pass

    error_msg = f"Resend API error: {response.status_code}"
    if error_detail:
        error_msg = f"{error_msg} ({error_detail})"
    raise EmailSendError(error_msg)
