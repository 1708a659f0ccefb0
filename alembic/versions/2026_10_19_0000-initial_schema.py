"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('plan_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('sub_provider', sa.String(20), nullable=True),
        sa.Column('sub_customer_id', sa.String(255), nullable=True),
        sa.Column('sub_subscription_id', sa.String(255), nullable=True),
        sa.Column('sub_status', sa.String(30), nullable=True),
        sa.Column('sub_plan_key', sa.String(100), nullable=True),
        sa.Column('sub_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sub_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits >= 0', name='ck_credits_non_negative'),
        sa.CheckConstraint("plan_tier IN ('free', 'premium', 'pro')", name='ck_plan_tier'),
        sa.CheckConstraint("status IN ('active', 'frozen', 'closed')", name='ck_account_status'),
        sa.UniqueConstraint('sub_provider', 'sub_customer_id', name='uq_account_subscription_customer'),
    )

    # Indexes for accounts
    op.create_index('idx_accounts_status', 'accounts', ['status'])
    op.create_index(
        'idx_accounts_sub_customer', 'accounts', ['sub_provider', 'sub_customer_id'],
        postgresql_where=sa.text('sub_customer_id IS NOT NULL'),
    )

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), sa.ForeignKey('accounts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(20), nullable=False),
        sa.Column('operation_id', sa.String(255), nullable=True),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('delta <> 0', name='ck_ledger_delta_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_non_negative'),
        sa.CheckConstraint("reason IN ('debit', 'refund', 'grant', 'trial_grant')", name='ck_ledger_reason'),
        sa.UniqueConstraint('account_id', 'reason', 'operation_id', name='uq_ledger_operation'),
    )

    op.create_index('ix_ledger_entries_account_id', 'ledger_entries', ['account_id'])
    op.create_index('idx_ledger_entries_created_at', 'ledger_entries', ['created_at'])

    # ========================================================================
    # Create credit_reservations table
    # ========================================================================
    op.create_table(
        'credit_reservations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', sa.String(255), sa.ForeignKey('accounts.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('operation_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('state', sa.String(20), nullable=False, server_default='held'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_reservation_amount_positive'),
        sa.CheckConstraint("state IN ('held', 'settled', 'released')", name='ck_reservation_state'),
        sa.UniqueConstraint('account_id', 'operation_id', name='uq_reservation_operation'),
    )

    # Sweeper scans only held reservations
    op.create_index(
        'idx_reservations_held_expiry', 'credit_reservations', ['expires_at'],
        postgresql_where=sa.text("state = 'held'"),
    )

    # ========================================================================
    # Create processed_events table
    # ========================================================================
    op.create_table(
        'processed_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('account_id', sa.String(255), nullable=True),
        sa.Column('outcome', sa.String(30), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('provider', 'external_event_id', name='uq_processed_event'),
    )

    op.create_index('idx_processed_events_account', 'processed_events', ['account_id'])

    # ========================================================================
    # Create parked_events table
    # ========================================================================
    op.create_table(
        'parked_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('customer_id', sa.String(255), nullable=True),
        sa.Column('subscription_id', sa.String(255), nullable=True),
        sa.Column('account_hint', sa.String(255), nullable=True),
        sa.Column('status', sa.String(30), nullable=True),
        sa.Column('plan_key', sa.String(100), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('parked_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False),

        sa.UniqueConstraint('provider', 'external_event_id', name='uq_parked_event'),
    )

    op.create_index('idx_parked_events_customer', 'parked_events', ['provider', 'customer_id'])
    op.create_index('idx_parked_events_next_attempt', 'parked_events', ['next_attempt_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('parked_events')
    op.drop_table('processed_events')
    op.drop_table('credit_reservations')
    op.drop_table('ledger_entries')
    op.drop_table('accounts')
