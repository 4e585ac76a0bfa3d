"""One successful payment per merchant transaction id

Revision ID: 002_success_txnid_unique
Revises: 001_billing_tables
Create Date: 2025-02-03
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002_success_txnid_unique'
down_revision = '001_billing_tables'
branch_labels = None
depends_on = None


def upgrade():
    """Add partial unique index on successful merchant txnids"""
    op.create_index(
        'uq_payment_records_success_txnid',
        'payment_records',
        ['merchant_transaction_id'],
        unique=True,
        sqlite_where=sa.text("status = 'success'"),
        postgresql_where=sa.text("status = 'success'"),
    )


def downgrade():
    """Drop partial unique index"""
    op.drop_index('uq_payment_records_success_txnid', table_name='payment_records')
