"""Add stripe webhook event ledger and delivery attempt log

Revision ID: 002_add_stripe_webhook_events
Revises: 001_initial_schema
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision = '002_add_stripe_webhook_events'
down_revision = '001_initial_schema'
branch_labels = None
depends_on = None

def upgrade() -> None:
    # One row per Stripe event id; the unique constraint is the dedup guard
    op.create_table(
        'stripe_webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('stripe_event_id', sa.String(255), unique=True, nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('user_id', sa.String(36)),
        sa.Column('event_metadata', JSONB),
        sa.Column('status', sa.String(20), server_default='processing', nullable=False),
        sa.Column('attempts', sa.Integer, server_default=sa.text('1'), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('dead_letter', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),

        sa.CheckConstraint('attempts >= 0', name='ck_webhook_attempts_non_negative')
    )

    op.create_index('ix_stripe_webhook_events_status', 'stripe_webhook_events', ['status', 'created_at'])
    op.create_index('ix_stripe_webhook_events_type', 'stripe_webhook_events', ['event_type'])
    op.create_index('ix_stripe_webhook_events_dead_letter', 'stripe_webhook_events', ['dead_letter'])

    op.create_table(
        'webhook_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('attempt_number', sa.Integer, nullable=False),
        sa.Column('success', sa.Boolean, nullable=False),
        sa.Column('error_details', sa.Text),
        sa.Column('processing_time_ms', sa.Integer),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_webhook_attempts_event_id', 'webhook_attempts', ['event_id'])

def downgrade() -> None:
    op.drop_index('ix_webhook_attempts_event_id', 'webhook_attempts')
    op.drop_table('webhook_attempts')

    op.drop_index('ix_stripe_webhook_events_dead_letter', 'stripe_webhook_events')
    op.drop_index('ix_stripe_webhook_events_type', 'stripe_webhook_events')
    op.drop_index('ix_stripe_webhook_events_status', 'stripe_webhook_events')
    op.drop_table('stripe_webhook_events')
