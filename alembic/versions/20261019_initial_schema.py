"""Initial schema for scheduled scans, billing and transient scan state

Revision ID: 20261019_initial_schema
Revises:
Create Date: 2026-10-19

Tables:
- schedules / account_presets: tenant scan definitions
- profiles / credit_transactions: credit ledger
- billing_events: idempotency claims (webhook events, fulfillment locks, scan completion)
- kv_entries: TTL key-value rows (job meta, chunk results, caches)
- queue_messages: at-least-once scan queue
- scans: persisted results
- analysis_cache: per-item analysis memo
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '20261019_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        'schedules',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('label', sa.String(), nullable=False, server_default=''),
        sa.Column('time_of_day', sa.String(5), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='UTC'),
        sa.Column('days', JSONB, nullable=False, server_default='[]'),
        sa.Column('range_days', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('accounts', JSONB, nullable=False, server_default='[]'),
        sa.Column('preset_id', sa.String(), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('model', sa.String(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_status', sa.String(), nullable=False, server_default='idle'),
        sa.Column('last_run_message', sa.String(), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_schedules_owner_id', 'schedules', ['owner_id'])
    op.create_index('idx_schedules_enabled', 'schedules', ['enabled'])
    op.create_index('idx_schedules_status_last_run', 'schedules', ['last_run_status', 'last_run_at'])

    op.create_table(
        'account_presets',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False, server_default=''),
        sa.Column('accounts', JSONB, nullable=False, server_default='[]'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_account_presets_owner_id', 'account_presets', ['owner_id'])

    op.create_table(
        'profiles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('credits_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('subscription_status', sa.String(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('credits_balance >= 0', name='ck_profiles_balance_non_negative'),
    )
    op.create_index('ix_profiles_stripe_customer_id', 'profiles', ['stripe_customer_id'], unique=True)

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(), nullable=False, server_default=''),
        sa.Column('details', JSONB, nullable=False, server_default='{}'),
        _created_at(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])

    op.create_table(
        'billing_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False, server_default=''),
        sa.Column('data', JSONB, nullable=False, server_default='{}'),
        _created_at(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_billing_events_event_id', 'billing_events', ['event_id'], unique=True)

    op.create_table(
        'kv_entries',
        sa.Column('key', sa.String(512), nullable=False),
        sa.Column('value', JSONB, nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('key')
    )
    op.create_index('ix_kv_entries_expires_at', 'kv_entries', ['expires_at'])

    op.create_table(
        'queue_messages',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('queue_name', sa.String(64), nullable=False),
        sa.Column('payload', JSONB, nullable=False),
        sa.Column('available_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deliveries', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_queue_messages_ready', 'queue_messages', ['queue_name', 'available_at'])

    op.create_table(
        'scans',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('schedule_id', sa.String(), nullable=True),
        sa.Column('accounts', JSONB, nullable=False, server_default='[]'),
        sa.Column('range_days', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('range_label', sa.String(), nullable=False, server_default=''),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signal_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signals', JSONB, nullable=False, server_default='[]'),
        sa.Column('item_meta', JSONB, nullable=False, server_default='{}'),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_tier', sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_scans_user_id', 'scans', ['user_id'])
    op.create_index('ix_scans_schedule_id', 'scans', ['schedule_id'])
    op.create_index('ix_scans_created_at', 'scans', ['created_at'])

    op.create_table(
        'analysis_cache',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('prompt_hash', sa.String(64), nullable=False),
        sa.Column('item_key', sa.String(2048), nullable=False),
        sa.Column('signals', JSONB, nullable=False, server_default='[]'),
        sa.Column('model', sa.String(), nullable=False, server_default=''),
        _created_at(),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('prompt_hash', 'item_key', name='uq_analysis_cache_prompt_item'),
    )
    op.create_index('ix_analysis_cache_prompt_hash', 'analysis_cache', ['prompt_hash'])
    op.create_index('ix_analysis_cache_expires_at', 'analysis_cache', ['expires_at'])


def downgrade() -> None:
    for table in (
        'analysis_cache',
        'scans',
        'queue_messages',
        'kv_entries',
        'billing_events',
        'credit_transactions',
        'profiles',
        'account_presets',
        'schedules',
    ):
        op.drop_table(table)
