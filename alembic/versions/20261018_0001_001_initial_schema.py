"""Initial schema for the instruction engine

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

Users with provider credentials, synced provider records (emails, contacts,
contact notes, calendar events), standing instructions, tasks,
notifications, webhook log, agent runs and the tool invocation ledger.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, index=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('google_access_token', sa.Text, nullable=True),
        sa.Column('google_refresh_token', sa.Text, nullable=True),
        sa.Column('hubspot_access_token', sa.Text, nullable=True),
        sa.Column('hubspot_refresh_token', sa.Text, nullable=True),
        sa.Column('hubspot_connected', sa.Boolean, default=False),
        sa.Column('is_active', sa.Boolean, default=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # Synced Gmail messages
    op.create_table(
        'emails',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('gmail_id', sa.String(255), unique=True, nullable=False),
        sa.Column('thread_id', sa.String(255), nullable=True),
        sa.Column('subject', sa.Text, nullable=True),
        sa.Column('sender', sa.String(512), nullable=False),
        sa.Column('recipient', sa.Text, nullable=True),
        sa.Column('body', sa.Text, nullable=True),
        sa.Column('date', sa.DateTime, nullable=False),
        sa.Column('labels_json', sa.Text, nullable=True),
        sa.Column('is_read', sa.Boolean, default=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_emails_user_date', 'emails', ['user_id', 'date'])
    op.create_index('ix_emails_user_sender', 'emails', ['user_id', 'sender'])

    # HubSpot contact mirror
    op.create_table(
        'contacts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('hubspot_id', sa.String(64), unique=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(64), nullable=True),
        sa.Column('company', sa.String(255), nullable=True),
        sa.Column('job_title', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_contacts_user_email', 'contacts', ['user_id', 'email'])

    op.create_table(
        'contact_notes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('contact_id', sa.String(36), sa.ForeignKey('contacts.id'), index=True, nullable=False),
        sa.Column('hubspot_id', sa.String(64), unique=True, nullable=False),
        sa.Column('note', sa.Text, nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Synced Google Calendar events
    op.create_table(
        'calendar_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('google_id', sa.String(255), unique=True, nullable=False),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('start_time', sa.DateTime, nullable=False),
        sa.Column('end_time', sa.DateTime, nullable=False),
        sa.Column('attendees_json', sa.Text, nullable=True),
        sa.Column('location', sa.String(512), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('organizer', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_calendar_events_user_start', 'calendar_events', ['user_id', 'start_time'])

    # Standing instructions (soft-disabled, never deleted)
    op.create_table(
        'standing_instructions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('instruction_text', sa.Text, nullable=False),
        sa.Column('trigger_type', sa.String(32), nullable=False),
        sa.Column('is_active', sa.Boolean, default=True),
        sa.Column('conditions_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index(
        'ix_instructions_user_trigger_active', 'standing_instructions',
        ['user_id', 'trigger_type', 'is_active'],
    )

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('title', sa.String(512), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('status', sa.String(32), default='pending'),
        sa.Column('priority', sa.String(16), default='medium'),
        sa.Column('context_json', sa.Text, nullable=True),
        sa.Column('result', sa.Text, nullable=True),
        sa.Column('error', sa.Text, nullable=True),
        sa.Column('started_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_tasks_user_status', 'tasks', ['user_id', 'status'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('type', sa.String(40), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('severity', sa.String(16), default='info'),
        sa.Column('is_read', sa.Boolean, default=False),
        sa.Column('dedupe_key', sa.String(255), nullable=True),
        sa.Column('metadata_json', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index(
        'ix_notifications_user_read_created', 'notifications', ['user_id', 'is_read', 'created_at'],
    )
    op.create_index(
        'ix_notifications_user_type_created', 'notifications', ['user_id', 'type', 'created_at'],
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=True),
        sa.Column('source', sa.String(32), nullable=False),
        sa.Column('event_type', sa.String(128), nullable=False),
        sa.Column('payload_json', sa.Text, nullable=False),
        sa.Column('processed', sa.Boolean, default=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Agent run audit trail
    op.create_table(
        'agent_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('instruction_id', sa.String(36), sa.ForeignKey('standing_instructions.id'), index=True, nullable=True),
        sa.Column('event_ref', sa.String(300), nullable=False),
        sa.Column('run_key', sa.String(64), index=True, nullable=False),
        sa.Column('rounds_json', sa.Text, default='[]'),
        sa.Column('outcome', sa.String(16), default='running'),
        sa.Column('final_text', sa.Text, nullable=True),
        sa.Column('error', sa.Text, nullable=True),
        sa.Column('catalog_version', sa.String(16), nullable=True),
        sa.Column('started_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime, nullable=True),
    )

    # Side-effect idempotency ledger
    op.create_table(
        'tool_invocations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), index=True, nullable=False),
        sa.Column('agent_run_id', sa.String(36), sa.ForeignKey('agent_runs.id'), index=True, nullable=True),
        sa.Column('idempotency_key', sa.String(64), unique=True, nullable=False),
        sa.Column('tool_name', sa.String(64), nullable=False),
        sa.Column('arguments_json', sa.Text, nullable=False),
        sa.Column('result_json', sa.Text, nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('tool_invocations')
    op.drop_table('agent_runs')
    op.drop_table('webhook_events')
    op.drop_index('ix_notifications_user_type_created', table_name='notifications')
    op.drop_index('ix_notifications_user_read_created', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('ix_tasks_user_status', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_instructions_user_trigger_active', table_name='standing_instructions')
    op.drop_table('standing_instructions')
    op.drop_index('ix_calendar_events_user_start', table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_table('contact_notes')
    op.drop_index('ix_contacts_user_email', table_name='contacts')
    op.drop_table('contacts')
    op.drop_index('ix_emails_user_sender', table_name='emails')
    op.drop_index('ix_emails_user_date', table_name='emails')
    op.drop_table('emails')
    op.drop_table('users')
