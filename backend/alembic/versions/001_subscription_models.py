"""Subscription accounts and payment orders.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False, server_default=''),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='user'),
        sa.Column('plan', sa.String(50), nullable=False, server_default='starter'),
        sa.Column('plan_status', sa.String(20), nullable=False, server_default='trialing'),
        sa.Column('plan_expiry', sa.DateTime(), nullable=True),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('usage', sa.JSON(), nullable=False),
        sa.Column('usage_reset_at', sa.DateTime(), nullable=True),
        sa.Column('expiry_reminders', sa.JSON(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)
    op.create_index('ix_accounts_plan', 'accounts', ['plan'])
    op.create_index('ix_accounts_plan_status', 'accounts', ['plan_status'])
    op.create_index('ix_accounts_plan_expiry', 'accounts', ['plan_expiry'])

    op.create_table(
        'payment_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.String(100), nullable=False),
        sa.Column('account_id', sa.Uuid(), nullable=False),
        sa.Column('plan', sa.String(50), nullable=False),
        sa.Column('billing_cycle', sa.String(20), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('gateway_payment_id', sa.String(100), nullable=True),
        sa.Column('payment_session_id', sa.Text(), nullable=True),
        sa.Column('payment_link', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_orders_order_id', 'payment_orders', ['order_id'], unique=True)
    op.create_index('ix_payment_orders_account_id', 'payment_orders', ['account_id'])
    op.create_index('ix_payment_orders_status', 'payment_orders', ['status'])
    op.create_index('ix_payment_orders_status_created', 'payment_orders', ['status', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_payment_orders_status_created', table_name='payment_orders')
    op.drop_index('ix_payment_orders_status', table_name='payment_orders')
    op.drop_index('ix_payment_orders_account_id', table_name='payment_orders')
    op.drop_index('ix_payment_orders_order_id', table_name='payment_orders')
    op.drop_table('payment_orders')

    op.drop_index('ix_accounts_plan_expiry', table_name='accounts')
    op.drop_index('ix_accounts_plan_status', table_name='accounts')
    op.drop_index('ix_accounts_plan', table_name='accounts')
    op.drop_index('ix_accounts_email', table_name='accounts')
    op.drop_table('accounts')
