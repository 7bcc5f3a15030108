"""profiles, songs, orders and credit ledger
Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table('profiles',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255)),
        sa.Column('full_name', sa.String(length=255)),
        sa.Column('credits_remaining', sa.Integer(), server_default='0', nullable=False),
        sa.Column('subscription_status', sa.String(length=20), server_default='free', nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255)),
        sa.Column('stripe_subscription_id', sa.String(length=255)),
        sa.Column('subscription_plan_id', sa.String(length=255)),
        sa.Column('billing_cycle_anchor', sa.DateTime(timezone=True)),
        sa.Column('next_billing_date', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('credits_remaining >= 0', name='ck_profiles_credits_non_negative')
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'])
    op.create_index('ix_profiles_stripe_customer_id', 'profiles', ['stripe_customer_id'])
    op.create_index('ix_profiles_stripe_subscription_id', 'profiles', ['stripe_subscription_id'])

    op.create_table('songs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('questionnaire_data', postgresql.JSONB(), nullable=False),
        sa.Column('generated_lyrics', sa.Text()),
        sa.Column('audio_url', sa.Text()),
        sa.Column('backup_audio_url', sa.Text()),
        sa.Column('mureka_task_id', sa.String(length=255)),
        sa.Column('mureka_data', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True))
    )
    op.create_index('ix_songs_user_id', 'songs', ['user_id'])

    op.create_table('orders',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('song_id', sa.String(length=36), sa.ForeignKey('songs.id', ondelete='SET NULL')),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), server_default='usd', nullable=False),
        sa.Column('payment_provider_id', sa.String(length=255), nullable=False, unique=True),
        sa.Column('status', sa.String(length=20), server_default='completed', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])

    op.create_table('credit_transactions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('operation_type', sa.String(length=50), nullable=False),
        sa.Column('payment_reference', sa.String(length=255)),
        sa.Column('balance_before', sa.Integer()),
        sa.Column('balance_after', sa.Integer()),
        sa.Column('context', postgresql.JSONB()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('operation_type', 'payment_reference', name='uq_credit_tx_operation_reference')
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])

    op.create_table('billing_history',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('credits_added', sa.Integer(), nullable=False),
        sa.Column('stripe_invoice_id', sa.String(length=255), unique=True),
        sa.Column('stripe_subscription_id', sa.String(length=255)),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), unique=True),
        sa.Column('stripe_session_id', sa.String(length=255)),
        sa.Column('billing_period_start', sa.DateTime(timezone=True)),
        sa.Column('billing_period_end', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())
    )
    op.create_index('ix_billing_history_user_id', 'billing_history', ['user_id'])

def downgrade():
    op.drop_index('ix_billing_history_user_id', table_name='billing_history')
    op.drop_table('billing_history')
    op.drop_index('ix_credit_transactions_user_id', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_songs_user_id', table_name='songs')
    op.drop_table('songs')
    op.drop_index('ix_profiles_stripe_subscription_id', table_name='profiles')
    op.drop_index('ix_profiles_stripe_customer_id', table_name='profiles')
    op.drop_index('ix_profiles_email', table_name='profiles')
    op.drop_table('profiles')
