"""Tests for structured logging helpers."""

from app.core.structured_logging import build_log_context


def test_build_log_context_includes_only_provided_fields():
    context = build_log_context(
        run_id="run-1",
        step_execution_id="se-1",
        org_id="org-1",
        job_id="job-1",
    )

    assert context == {
        "run_id": "run-1",
        "step_execution_id": "se-1",
        "org_id": "org-1",
        "job_id": "job-1",
    }


def test_build_log_context_ignores_empty_fields():
    context = build_log_context(run_id="", flow_id=None, route="/api/runs")

    assert context == {"route": "/api/runs"}
