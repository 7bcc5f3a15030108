"""Add security event audit trail

Revision ID: 003_add_security_events
Revises: 002_add_stripe_webhook_events
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers
revision = '003_add_security_events'
down_revision = '002_add_stripe_webhook_events'
branch_labels = None
depends_on = None

def upgrade() -> None:
    op.create_table(
        'security_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36)),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(10), server_default='LOW', nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('event_metadata', JSONB),
        sa.Column('ip_address', sa.String(64)),
        sa.Column('user_agent', sa.String(512)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_security_events_user_id', 'security_events', ['user_id'])
    op.create_index('ix_security_events_type_created', 'security_events', ['event_type', 'created_at'])

def downgrade() -> None:
    op.drop_index('ix_security_events_type_created', 'security_events')
    op.drop_index('ix_security_events_user_id', 'security_events')
    op.drop_table('security_events')
