"""Tests for due dates and step timer jobs."""

from datetime import datetime, timedelta, timezone

from app.db.enums import JobStatus, JobType, StepExecutionStatus
from app.db.models import Job
from app.schemas.flow_definition import DueConfig, parse_definition
from app.services import execution_service, flow_run_service, step_engine

NOW = datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_relative_and_legacy_due():
    assert execution_service.compute_step_due_at(
        DueConfig(type="RELATIVE", value=2, unit="DAYS"), NOW
    ) == NOW + timedelta(days=2)
    assert execution_service.compute_step_due_at(
        DueConfig(value=3, unit="hours"), NOW
    ) == NOW + timedelta(hours=3)
    assert execution_service.compute_step_due_at(
        DueConfig(value=1, unit="WEEKS"), NOW
    ) == NOW + timedelta(weeks=1)


def test_fixed_due():
    fixed = datetime(2030, 4, 1, tzinfo=timezone.utc)
    assert execution_service.compute_step_due_at(DueConfig(type="FIXED", date=fixed), NOW) == fixed


def test_before_flow_due():
    due = DueConfig(type="BEFORE_FLOW_DUE", value=1, unit="DAYS")
    flow_due = NOW + timedelta(days=10)
    assert execution_service.compute_step_due_at(due, NOW, flow_due) == NOW + timedelta(days=9)
    assert execution_service.compute_step_due_at(due, NOW, None) is None


def test_flow_due_ignores_before_flow_due():
    assert execution_service.compute_flow_due_at(
        DueConfig(type="BEFORE_FLOW_DUE", value=1), NOW
    ) is None
    assert execution_service.compute_flow_due_at(None, NOW) is None
    assert execution_service.compute_flow_due_at(
        DueConfig(type="RELATIVE", value=5, unit="DAYS"), NOW
    ) == NOW + timedelta(days=5)


def test_step_override_replaces_flow_policy():
    definition = parse_definition(
        {
            "settings": {"notifications": {"reminderHoursBefore": 12, "escalationHoursAfter": 24}},
            "steps": [
                {"id": "a"},
                {"id": "b", "reminderOverride": {"reminderEnabled": False, "escalationHoursAfter": None}},
                {"id": "c", "reminderOverride": {"useFlowDefaults": True, "reminderEnabled": False}},
            ],
        }
    )
    a, b, c = definition.steps
    policy_a = execution_service.notification_policy(definition, a)
    policy_b = execution_service.notification_policy(definition, b)
    policy_c = execution_service.notification_policy(definition, c)

    assert policy_a.reminder_hours_before == 12
    assert policy_a.escalation_hours_after == 24
    assert policy_b.reminder_enabled is False
    assert policy_b.escalation_hours_after is None
    assert policy_b.reminder_hours_before == 12
    assert policy_c.reminder_enabled is True


def _jobs(db, row):
    return {
        job.job_type: job
        for job in db.query(Job).filter(Job.step_execution_id == row.id).all()
    }


def test_activation_schedules_timer_jobs(db, make_flow, step_rows):
    flow = make_flow(
        {
            "settings": {"notifications": {"reminderHoursBefore": 24, "escalationHoursAfter": 48}},
            "steps": [{"id": "s1", "due": {"type": "RELATIVE", "value": 3, "unit": "DAYS"}}],
        }
    )
    run = flow_run_service.start_run(db, flow.id, now=NOW)

    row = step_rows(run.id)["s1"]
    due = NOW + timedelta(days=3)
    assert row.due_at == due

    jobs = _jobs(db, row)
    assert set(jobs) == {
        JobType.STEP_REMINDER.value,
        JobType.STEP_OVERDUE_CHECK.value,
        JobType.STEP_ESCALATION.value,
    }
    assert jobs[JobType.STEP_REMINDER.value].run_at == due - timedelta(hours=24)
    assert jobs[JobType.STEP_OVERDUE_CHECK.value].run_at == due
    assert jobs[JobType.STEP_ESCALATION.value].run_at == due + timedelta(hours=48)
    assert jobs[JobType.STEP_REMINDER.value].idempotency_key == f"step_reminder:{row.id}:0"
    assert jobs[JobType.STEP_REMINDER.value].payload["iteration"] == 0


def test_reminder_in_the_past_is_not_scheduled(db, make_flow, step_rows):
    flow = make_flow({"steps": [{"id": "s1", "due": {"value": 2, "unit": "HOURS"}}]})
    run = flow_run_service.start_run(db, flow.id, now=NOW)

    jobs = _jobs(db, step_rows(run.id)["s1"])
    assert JobType.STEP_REMINDER.value not in jobs
    assert JobType.STEP_OVERDUE_CHECK.value in jobs


def test_no_due_no_jobs(db, make_flow, step_rows):
    flow = make_flow({"steps": [{"id": "s1"}]})
    run = flow_run_service.start_run(db, flow.id, now=NOW)

    row = step_rows(run.id)["s1"]
    assert row.due_at is None
    assert _jobs(db, row) == {}


def test_closing_a_step_cancels_its_timers(db, make_flow, step_rows):
    flow = make_flow(
        {"steps": [{"id": "s1", "due": {"value": 3, "unit": "DAYS"}}, {"id": "s2"}]}
    )
    run = flow_run_service.start_run(db, flow.id, now=NOW)
    row = step_rows(run.id)["s1"]

    step_engine.complete_step(db, row.id, now=NOW + timedelta(hours=1))

    row = step_rows(run.id)["s1"]
    assert row.status == StepExecutionStatus.COMPLETED.value
    assert {job.status for job in _jobs(db, row).values()} == {JobStatus.CANCELLED.value}
