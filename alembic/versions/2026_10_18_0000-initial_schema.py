"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_18_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create credit balances, transaction ledger and generations."""

    # ========================================================================
    # Create credit_balances table
    # ========================================================================
    op.create_table(
        'credit_balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('has_active_package', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('package_allowance_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('package_allowance_used_this_period', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('credits_used_this_period', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('generations_this_period', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_generations_per_period', sa.Integer(), nullable=True),
        sa.Column('account_balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('user_id', name='uq_credit_balances_user_id'),
        sa.CheckConstraint('package_allowance_total >= 0', name='ck_package_total_non_negative'),
        sa.CheckConstraint('package_allowance_used_this_period >= 0', name='ck_package_used_non_negative'),
        sa.CheckConstraint('account_balance >= 0', name='ck_account_balance_non_negative'),
        sa.CheckConstraint('generations_this_period >= 0', name='ck_generations_non_negative'),
        sa.CheckConstraint('credits_used_this_period >= 0', name='ck_credits_used_non_negative'),
    )

    # ========================================================================
    # Create credit_transactions table (immutable audit ledger)
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('credit_tier', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_before', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('generation_id', UUID(as_uuid=True), nullable=True),
        sa.Column('audit_metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_transaction_amount_positive'),
        sa.CheckConstraint(
            "transaction_type IN ('reservation', 'refund', 'top_up', 'adjustment')",
            name='ck_transaction_type',
        ),
        sa.CheckConstraint("credit_tier IN ('package', 'account')", name='ck_credit_tier'),
    )

    # Indexes for credit_transactions
    op.create_index('ix_credit_transactions_user_id', 'credit_transactions', ['user_id'])
    op.create_index('idx_credit_transactions_created_at', 'credit_transactions', ['created_at'])
    op.create_index(
        'idx_credit_transactions_generation_id',
        'credit_transactions',
        ['generation_id'],
        postgresql_where=sa.text('generation_id IS NOT NULL'),
    )

    # ========================================================================
    # Create generations table
    # ========================================================================
    op.create_table(
        'generations',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('model', sa.String(255), nullable=False),
        sa.Column('model_version', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('credits_reserved', sa.BigInteger(), nullable=False),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('input', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('output', JSONB(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('stored_urls', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('processing_time_seconds', sa.Float(), nullable=True),
        sa.Column('audit_metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('external_id', name='uq_generations_external_id'),
        sa.CheckConstraint('credits_reserved >= 0', name='ck_credits_reserved_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'starting', 'processing', 'completed', 'failed')",
            name='ck_generation_status',
        ),
    )

    # Indexes for generations
    op.create_index('ix_generations_user_id', 'generations', ['user_id'])
    op.create_index('idx_generations_status', 'generations', ['status'])
    op.create_index('idx_generations_created_at', 'generations', ['created_at'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('generations')
    op.drop_table('credit_transactions')
    op.drop_table('credit_balances')
