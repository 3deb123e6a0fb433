"""Shared helpers for worker job handlers."""

from __future__ import annotations

from urllib.parse import urlsplit

from app.services.audit_service import hash_email


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    return hash_email(email)


def safe_url(url: str | None) -> str:
    """Drop query string, fragment and credentials before logging a URL."""
    if not url:
        return ""
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    return f"{parts.scheme}://{host}{parts.path}"
