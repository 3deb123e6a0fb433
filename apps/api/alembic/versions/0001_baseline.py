"""Baseline migration - tenants, flows, runs, jobs and notifications

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18

Creates every table used by the flow run engine. Column types are portable
(JSONB on PostgreSQL, JSON elsewhere) so the same migration runs on SQLite.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_DOC = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
TS = sa.DateTime(timezone=True)


def _id() -> sa.Column:
    return sa.Column('id', sa.String(36), primary_key=True)


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Tenants
    # ==========================================================================
    op.create_table(
        'organizations',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('created_at', TS, nullable=False),
    )

    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column(
            'active_organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('created_at', TS, nullable=False),
    )

    op.create_table(
        'contacts',
        _id(),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False, server_default='ASSIGNEE'),
        sa.Column('status', sa.String(20), nullable=False, server_default='ACTIVE'),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_contacts_org_email', 'contacts', ['organization_id', 'email'])

    # ==========================================================================
    # Flows and runs
    # ==========================================================================
    op.create_table(
        'flows',
        _id(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('status', sa.String(20), nullable=False, server_default='DRAFT'),
        sa.Column('definition', JSON_DOC, nullable=True),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column(
            'created_by_id',
            sa.String(36),
            sa.ForeignKey('users.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('updated_at', TS, nullable=False),
    )
    op.create_index('idx_flows_org', 'flows', ['organization_id'])

    op.create_table(
        'flow_runs',
        _id(),
        sa.Column(
            'flow_id',
            sa.String(36),
            sa.ForeignKey('flows.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('is_sample', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('current_step_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_by_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('role_assignments', JSON_DOC, nullable=False),
        sa.Column('kickoff_data', JSON_DOC, nullable=True),
        sa.Column('started_at', TS, nullable=False),
        sa.Column('completed_at', TS, nullable=True),
        sa.Column('due_at', TS, nullable=True),
        sa.Column('last_activity_at', TS, nullable=True),
    )
    op.create_index('idx_flow_runs_flow', 'flow_runs', ['flow_id'])
    op.create_index('idx_flow_runs_org_status', 'flow_runs', ['organization_id', 'status'])

    op.create_table(
        'step_executions',
        _id(),
        sa.Column(
            'flow_run_id',
            sa.String(36),
            sa.ForeignKey('flow_runs.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('step_id', sa.String(255), nullable=False),
        sa.Column('step_index', sa.Integer(), nullable=False),
        sa.Column('branch_path', sa.String(500), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('iteration', sa.Integer(), nullable=False, server_default='0'),
        sa.Column(
            'assigned_to_user_id',
            sa.String(36),
            sa.ForeignKey('users.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column(
            'assigned_to_contact_id',
            sa.String(36),
            sa.ForeignKey('contacts.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('result_data', JSON_DOC, nullable=True),
        sa.Column('branch_state', JSON_DOC, nullable=True),
        sa.Column('started_at', TS, nullable=True),
        sa.Column('completed_at', TS, nullable=True),
        sa.Column('completed_by_id', sa.String(255), nullable=True),
        sa.Column('due_at', TS, nullable=True),
        sa.Column('reminder_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reminder_sent_at', TS, nullable=True),
        sa.Column('escalated_at', TS, nullable=True),
        sa.UniqueConstraint('flow_run_id', 'step_id', name='uq_step_exec_run_step'),
        sa.CheckConstraint(
            'assigned_to_user_id IS NULL OR assigned_to_contact_id IS NULL',
            name='ck_step_exec_single_assignee',
        ),
    )
    op.create_index('idx_step_exec_run_status', 'step_executions', ['flow_run_id', 'status'])

    op.create_table(
        'magic_links',
        _id(),
        sa.Column('token', sa.String(128), nullable=False, unique=True),
        sa.Column(
            'step_execution_id',
            sa.String(36),
            sa.ForeignKey('step_executions.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('expires_at', TS, nullable=False),
        sa.Column('used_at', TS, nullable=True),
        sa.Column('created_at', TS, nullable=False),
    )

    # ==========================================================================
    # Audit
    # ==========================================================================
    op.create_table(
        'audit_logs',
        _id(),
        sa.Column(
            'flow_run_id',
            sa.String(36),
            sa.ForeignKey('flow_runs.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('actor_id', sa.String(255), nullable=True),
        sa.Column('actor_email', sa.String(255), nullable=True),
        sa.Column('details', JSON_DOC, nullable=True),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_audit_run_created', 'audit_logs', ['flow_run_id', 'created_at'])
    op.create_index('idx_audit_run_sequence', 'audit_logs', ['flow_run_id', 'sequence'])
    op.create_index('idx_audit_action', 'audit_logs', ['action'])

    # ==========================================================================
    # Jobs
    # ==========================================================================
    op.create_table(
        'jobs',
        _id(),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', JSON_DOC, nullable=False),
        sa.Column('run_at', TS, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column(
            'step_execution_id',
            sa.String(36),
            sa.ForeignKey('step_executions.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column('created_at', TS, nullable=False),
        sa.Column('completed_at', TS, nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
    )
    op.create_index(
        'idx_jobs_pending',
        'jobs',
        ['status', 'run_at'],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index('idx_jobs_org', 'jobs', ['organization_id', 'created_at'])
    op.create_index('idx_jobs_step_exec', 'jobs', ['step_execution_id'])
    op.create_index('uq_job_idempotency', 'jobs', ['idempotency_key'], unique=True)

    # ==========================================================================
    # Webhooks and notifications
    # ==========================================================================
    op.create_table(
        'webhook_endpoints',
        _id(),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('secret', sa.String(255), nullable=False),
        sa.Column('events', JSON_DOC, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TS, nullable=False),
    )
    op.create_index('idx_webhook_endpoints_org', 'webhook_endpoints', ['organization_id'])

    op.create_table(
        'notification_log',
        _id(),
        sa.Column(
            'organization_id',
            sa.String(36),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('channel', sa.String(20), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('recipient', sa.Text(), nullable=False),
        sa.Column(
            'flow_run_id',
            sa.String(36),
            sa.ForeignKey('flow_runs.id', ondelete='CASCADE'),
            nullable=True,
        ),
        sa.Column(
            'step_execution_id',
            sa.String(36),
            sa.ForeignKey('step_executions.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', TS, nullable=False),
    )
    op.create_index('idx_notification_log_run', 'notification_log', ['flow_run_id'])
    op.create_index(
        'idx_notification_log_org_sent', 'notification_log', ['organization_id', 'sent_at']
    )


def downgrade() -> None:
    """Drop all tables (reverse dependency order)."""
    for table in (
        'notification_log',
        'webhook_endpoints',
        'jobs',
        'audit_logs',
        'magic_links',
        'step_executions',
        'flow_runs',
        'flows',
        'contacts',
        'users',
        'organizations',
    ):
        op.drop_table(table)
