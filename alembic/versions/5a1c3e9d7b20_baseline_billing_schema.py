"""baseline_billing_schema

Revision ID: 5a1c3e9d7b20
Revises:
Create Date: 2026-10-19 09:12:44.118302

Production-safe migration: Only creates tables that don't exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '5a1c3e9d7b20'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBSCRIPTION_STATUSES = ('Pending', 'Active', 'Canceled', 'Failed', 'Pending Downgrade')
PAYMENT_STATUSES = ('Pending', 'Paid', 'Failed', 'Free')


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    if not table_exists('users'):
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(), nullable=False),
            sa.Column('full_name', sa.String(), nullable=True),
            sa.Column('password_hash', sa.String(), nullable=True),
            sa.Column('credits_remaining', sa.String(), server_default='0', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)

    if not table_exists('plans'):
        op.create_table('plans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('price', sa.Numeric(10, 2), nullable=False),
            sa.Column('credits_per_month', sa.String(), nullable=False),
            sa.Column('stripe_product_id', sa.String(), nullable=True),
            sa.Column('stripe_price_id', sa.String(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_plans_id'), 'plans', ['id'], unique=False)
        op.create_index(op.f('ix_plans_name'), 'plans', ['name'], unique=True)
        op.create_index(op.f('ix_plans_stripe_price_id'), 'plans', ['stripe_price_id'], unique=False)

    if not table_exists('subscriptions'):
        op.create_table('subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status'), nullable=False),
            sa.Column('payment_status', sa.Enum(*PAYMENT_STATUSES, name='payment_status'), nullable=False),
            sa.Column('stripe_payment_id', sa.String(), nullable=True),
            sa.Column('stripe_checkout_session_id', sa.String(), nullable=True),
            sa.Column('stripe_info', sa.String(), nullable=True),
            sa.Column('start_date', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_subscription_user_status', 'subscriptions', ['user_id', 'status'], unique=False)
        op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
        op.create_index(op.f('ix_subscriptions_stripe_payment_id'), 'subscriptions', ['stripe_payment_id'], unique=False)
        op.create_index(op.f('ix_subscriptions_stripe_checkout_session_id'), 'subscriptions', ['stripe_checkout_session_id'], unique=False)

    if not table_exists('credit_transactions'):
        op.create_table('credit_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('credits_added', sa.String(), nullable=False),
            sa.Column('credits_deducted', sa.String(), nullable=False),
            sa.Column('payment_method', sa.String(), nullable=False),
            sa.Column('description', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_credit_tx_user_created', 'credit_transactions', ['user_id', 'created_at'], unique=False)
        op.create_index(op.f('ix_credit_transactions_id'), 'credit_transactions', ['id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_user_id'), 'credit_transactions', ['user_id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_subscription_id'), 'credit_transactions', ['subscription_id'], unique=False)
        op.create_index(op.f('ix_credit_transactions_created_at'), 'credit_transactions', ['created_at'], unique=False)

    if not table_exists('chats'):
        op.create_table('chats',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(), nullable=False),
            sa.Column('summary', sa.Text(), nullable=True),
            sa.Column('deleted', sa.Boolean(), server_default='0', nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_chat_user_deleted', 'chats', ['user_id', 'deleted'], unique=False)
        op.create_index(op.f('ix_chats_id'), 'chats', ['id'], unique=False)
        op.create_index(op.f('ix_chats_user_id'), 'chats', ['user_id'], unique=False)
        op.create_index(op.f('ix_chats_created_at'), 'chats', ['created_at'], unique=False)

    if not table_exists('chat_history'):
        op.create_table('chat_history',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('chat_id', sa.Integer(), nullable=False),
            sa.Column('user_input', sa.Text(), nullable=True),
            sa.Column('api_response', sa.Text(), nullable=True),
            sa.Column('model_name', sa.String(), nullable=True),
            sa.Column('input_type', sa.String(), nullable=False),
            sa.Column('output_type', sa.String(), nullable=False),
            sa.Column('context_id', sa.String(), nullable=True),
            sa.Column('prompt_tokens', sa.Integer(), nullable=False),
            sa.Column('completion_tokens', sa.Integer(), nullable=False),
            sa.Column('credits_deducted', sa.String(), nullable=False),
            sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_chat_history_id'), 'chat_history', ['id'], unique=False)
        op.create_index(op.f('ix_chat_history_chat_id'), 'chat_history', ['chat_id'], unique=False)
        op.create_index(op.f('ix_chat_history_timestamp'), 'chat_history', ['timestamp'], unique=False)


def downgrade() -> None:
    """
    Production-safe downgrade: Only drops tables created by this migration.
    """
    for table_name in ('chat_history', 'chats', 'credit_transactions', 'subscriptions', 'plans', 'users'):
        if table_exists(table_name):
            op.drop_table(table_name)
