"""Billing tables: users, subscriptions, payment records

Revision ID: 001_billing_tables
Revises:
Create Date: 2025-01-10
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_billing_tables'
down_revision = None
branch_labels = None
depends_on = None

usage_tier = sa.Enum('free', 'pro', 'agency', 'enterprise', name='usagetier')
user_subscription_status = sa.Enum('none', 'active', 'cancelled', 'expired', name='usersubscriptionstatus')
subscription_status = sa.Enum('active', 'cancelled', 'expired', name='subscriptionstatus')
payment_status = sa.Enum('pending', 'success', 'failed', name='paymentstatus')


def upgrade():
    """Create billing tables"""

    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('usage_tier', usage_tier, nullable=False, server_default='free'),
        sa.Column('subscription_status', user_subscription_status, nullable=False, server_default='none'),
        sa.Column('current_subscription_id', sa.String(), nullable=True),
        sa.Column('subscription_end_date', sa.DateTime(), nullable=True),
        sa.Column('has_used_trial', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('tier', sa.String(50), nullable=False),
        sa.Column('plan_name', sa.String(50), nullable=False),
        sa.Column('gateway_order_id', sa.String(255), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('status', subscription_status, nullable=False, server_default='active'),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.CheckConstraint('amount >= 0', name='check_subscription_amount_non_negative'),
        sa.CheckConstraint('end_date > start_date', name='check_subscription_period'),
    )
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('idx_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])
    op.create_index('idx_subscriptions_status_end_date', 'subscriptions', ['status', 'end_date'])

    # Append-only audit trail; gateway_transaction_id is the idempotency key
    op.create_table(
        'payment_records',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), sa.ForeignKey('subscriptions.id'), nullable=True),
        sa.Column('gateway_order_id', sa.String(255), nullable=True),
        sa.Column('merchant_transaction_id', sa.String(255), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('plan_name', sa.String(50), nullable=True),
        sa.Column('product_info', sa.String(255), nullable=True),
        sa.Column('invoice_number', sa.String(32), nullable=True),
        sa.Column('payment_date', sa.DateTime(), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.UniqueConstraint('gateway_transaction_id', name='uq_payment_records_gateway_transaction_id'),
        sa.UniqueConstraint('invoice_number', name='uq_payment_records_invoice_number'),
        sa.CheckConstraint('amount >= 0', name='check_payment_amount_non_negative'),
    )
    op.create_index('ix_payment_records_user_id', 'payment_records', ['user_id'])
    op.create_index('ix_payment_records_merchant_transaction_id', 'payment_records', ['merchant_transaction_id'])
    op.create_index('idx_payment_records_user_created', 'payment_records', ['user_id', 'created_at'])
    op.create_index('idx_payment_records_status', 'payment_records', ['status'])


def downgrade():
    """Drop billing tables"""
    op.drop_table('payment_records')
    op.drop_table('subscriptions')
    op.drop_table('users')

    bind = op.get_bind()
    for enum_type in (payment_status, subscription_status, user_subscription_status, usage_tier):
        enum_type.drop(bind, checkfirst=True)
