"""membership reconciliation tables

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '3f1c9a7d2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'memberships',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('plan_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('duration_type', sa.String(length=20), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('next_renewal_date', sa.DateTime(), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False),
        sa.Column('purchase_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=True),
        sa.Column('provider_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('provider_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','active','past_due','suspended','cancelled','expired')",
            name='ck_memberships_status_valid',
        ),
        sa.CheckConstraint(
            "duration_type IN ('monthly','yearly')",
            name='ck_memberships_duration_type_valid',
        ),
    )
    op.create_index('ix_memberships_user_id', 'memberships', ['user_id'], unique=True)
    op.create_index('ix_memberships_status', 'memberships', ['status'])
    op.create_index('ix_memberships_end_date', 'memberships', ['end_date'])
    op.create_index('ix_memberships_provider_customer_id', 'memberships', ['provider_customer_id'])

    op.create_table(
        'payment_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('provider_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('plan_name', sa.String(length=100), nullable=False),
        sa.Column('duration_type', sa.String(length=20), nullable=False),
        sa.Column('metadata', sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['memberships.user_id'], ondelete='RESTRICT'),
        sa.CheckConstraint("status IN ('completed','failed')", name='ck_payment_records_status_valid'),
    )
    op.create_index('ix_payment_records_user_id', 'payment_records', ['user_id'])
    op.create_index('ix_payment_records_status', 'payment_records', ['status'])
    op.create_index('ix_payment_records_provider_payment_intent_id', 'payment_records', ['provider_payment_intent_id'])
    op.create_index('ix_payment_records_created_at', 'payment_records', ['created_at'])

    op.create_table(
        'usage_limits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('monthly_use_cases', sa.Integer(), nullable=False),
        sa.Column('monthly_tutorials', sa.Integer(), nullable=False),
        sa.Column('monthly_blogs', sa.Integer(), nullable=False),
        sa.Column('monthly_api_calls', sa.Integer(), nullable=False),
        sa.Column('used_use_cases', sa.Integer(), nullable=False),
        sa.Column('used_tutorials', sa.Integer(), nullable=False),
        sa.Column('used_blogs', sa.Integer(), nullable=False),
        sa.Column('used_api_calls', sa.Integer(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=False),
        sa.Column('current_period_end', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_usage_limits_user_id', 'usage_limits', ['user_id'], unique=True)
    op.create_index('ix_usage_limits_current_period_end', 'usage_limits', ['current_period_end'])

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(length=255), primary_key=True),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('outcome', sa.String(length=20), nullable=False),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_processed_events_event_type', 'processed_events', ['event_type'])
    op.create_index('ix_processed_events_outcome', 'processed_events', ['outcome'])
    op.create_index('ix_processed_events_processed_at', 'processed_events', ['processed_at'])


def downgrade():
    op.drop_index('ix_processed_events_processed_at', table_name='processed_events')
    op.drop_index('ix_processed_events_outcome', table_name='processed_events')
    op.drop_index('ix_processed_events_event_type', table_name='processed_events')
    op.drop_table('processed_events')

    op.drop_index('ix_usage_limits_current_period_end', table_name='usage_limits')
    op.drop_index('ix_usage_limits_user_id', table_name='usage_limits')
    op.drop_table('usage_limits')

    op.drop_index('ix_payment_records_created_at', table_name='payment_records')
    op.drop_index('ix_payment_records_provider_payment_intent_id', table_name='payment_records')
    op.drop_index('ix_payment_records_status', table_name='payment_records')
    op.drop_index('ix_payment_records_user_id', table_name='payment_records')
    op.drop_table('payment_records')

    op.drop_index('ix_memberships_provider_customer_id', table_name='memberships')
    op.drop_index('ix_memberships_end_date', table_name='memberships')
    op.drop_index('ix_memberships_status', table_name='memberships')
    op.drop_index('ix_memberships_user_id', table_name='memberships')
    op.drop_table('memberships')
