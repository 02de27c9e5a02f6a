"""Create bot usage tracking, usage ledger, monthly cache and webhook log tables

Revision ID: 001
Revises:
Create Date: 2024-06-03 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SESSION_PROJECTION_COLUMNS = [
    ('recall_bot_id', sa.String(length=128)),
    ('recall_bot_status', sa.String(length=32)),
    ('recording_started_at', sa.DateTime(timezone=True)),
    ('recording_ended_at', sa.DateTime(timezone=True)),
    ('recording_duration_seconds', sa.Integer()),
    ('bot_recording_minutes', sa.Integer()),
    ('bot_billable_amount', sa.Numeric(precision=10, scale=2)),
    ('error_message', sa.Text()),
]


def upgrade() -> None:
    # One row per provider bot
    op.create_table(
        'bot_usage_tracking',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bot_id', sa.String(length=128), nullable=False),
        sa.Column('session_id', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('organization_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='created'),
        sa.Column('sub_code', sa.String(length=128), nullable=True),
        sa.Column('recording_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recording_ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('total_recording_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billable_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bot_id'),
        sa.CheckConstraint('total_recording_seconds >= 0', name='check_total_seconds'),
        sa.CheckConstraint('billable_minutes >= 0', name='check_billable_minutes'),
    )
    op.create_index('idx_bot_usage_status', 'bot_usage_tracking', ['status'], unique=False)
    op.create_index('idx_bot_usage_session', 'bot_usage_tracking', ['session_id'], unique=False)

    # Minute ledger
    op.create_table(
        'usage_tracking',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(length=128), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('session_id', sa.String(length=128), nullable=False),
        sa.Column('bot_id', sa.String(length=128), nullable=False),
        sa.Column('minute_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('seconds_recorded', sa.Integer(), nullable=False),
        sa.Column('billing_period', sa.String(length=7), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bot_id', 'minute_timestamp', name='unique_bot_minute'),
        sa.CheckConstraint(
            'seconds_recorded > 0 AND seconds_recorded <= 60',
            name='check_seconds_recorded',
        ),
    )
    op.create_index('idx_usage_session', 'usage_tracking', ['session_id'], unique=False)
    op.create_index('idx_usage_org_period', 'usage_tracking', ['organization_id', 'billing_period'], unique=False)

    op.create_table(
        'monthly_usage_cache',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(length=128), nullable=True),
        sa.Column('organization_key', sa.String(length=128), nullable=False, server_default=''),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('month_year', sa.String(length=7), nullable=False),
        sa.Column('total_minutes_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_seconds_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_updated', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_key', 'user_id', 'month_year', name='unique_monthly_usage'),
    )

    op.create_table(
        'webhook_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('webhook_type', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('event_key', sa.String(length=255), nullable=True),
        sa.Column('bot_id', sa.String(length=128), nullable=True),
        sa.Column('session_id', sa.String(length=128), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_webhook_logs_event_key', 'webhook_logs', ['event_key'], unique=False)
    op.create_index('idx_webhook_logs_bot', 'webhook_logs', ['bot_id'], unique=False)

    # The sessions table belongs to the product; only add the bot projection columns it lacks
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    if 'sessions' in inspector.get_table_names():
        existing = {column['name'] for column in inspector.get_columns('sessions')}
        for name, column_type in SESSION_PROJECTION_COLUMNS:
            if name not in existing:
                op.add_column('sessions', sa.Column(name, column_type, nullable=True))


def downgrade() -> None:
    op.drop_index('idx_webhook_logs_bot', table_name='webhook_logs')
    op.drop_index('idx_webhook_logs_event_key', table_name='webhook_logs')
    op.drop_table('webhook_logs')

    op.drop_table('monthly_usage_cache')

    op.drop_index('idx_usage_org_period', table_name='usage_tracking')
    op.drop_index('idx_usage_session', table_name='usage_tracking')
    op.drop_table('usage_tracking')

    op.drop_index('idx_bot_usage_session', table_name='bot_usage_tracking')
    op.drop_index('idx_bot_usage_status', table_name='bot_usage_tracking')
    op.drop_table('bot_usage_tracking')
