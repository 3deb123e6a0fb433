"""Structured logging helpers (PHI-safe)."""

from typing import Any


def build_log_context(
    *,
    run_id: str | None = None,
    flow_id: str | None = None,
    step_execution_id: str | None = None,
    org_id: str | None = None,
    job_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if run_id:
        context["run_id"] = run_id
    if flow_id:
        context["flow_id"] = flow_id
    if step_execution_id:
        context["step_execution_id"] = step_execution_id
    if org_id:
        context["org_id"] = org_id
    if job_id:
        context["job_id"] = job_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
