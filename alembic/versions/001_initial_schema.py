"""Initial off-ramp schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_WHERE = sa.text("status NOT IN ('completed', 'failed')")


def upgrade() -> None:
    # Off-ramp transactions
    op.create_table(
        'offramp_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('deposit_address', sa.String(42), nullable=False),
        sa.Column('derivation_identifier', sa.Text(), nullable=False),
        sa.Column('derivation_path', sa.String(100), nullable=True),
        sa.Column('network', sa.String(20), nullable=False),
        sa.Column('token_symbol', sa.String(20), nullable=True),
        sa.Column('token_address', sa.String(42), nullable=True),
        sa.Column('token_decimals', sa.Integer(), nullable=True),
        sa.Column('token_amount_raw', sa.String(78), nullable=True),
        sa.Column('token_amount', sa.Numeric(36, 18), nullable=True),
        sa.Column('usdc_amount_raw', sa.String(78), nullable=True),
        sa.Column('usdc_amount', sa.Numeric(36, 18), nullable=True),
        sa.Column('swap_tx_hash', sa.String(66), nullable=True),
        sa.Column('consolidation_tx_hash', sa.String(66), nullable=True),
        sa.Column('gas_funding_tx_hash', sa.String(66), nullable=True),
        sa.Column('gas_recovery_tx_hash', sa.String(66), nullable=True),
        sa.Column('refund_tx_hash', sa.String(66), nullable=True),
        sa.Column('ngn_amount', sa.Numeric(20, 2), nullable=True),
        sa.Column('fee_ngn', sa.Numeric(20, 2), nullable=True),
        sa.Column('fee_in_token', sa.Numeric(36, 18), nullable=True),
        sa.Column('exchange_rate', sa.Numeric(20, 6), nullable=True),
        sa.Column('payable_ngn', sa.Numeric(20, 2), nullable=True),
        sa.Column('account_number', sa.String(20), nullable=True),
        sa.Column('account_name', sa.String(255), nullable=True),
        sa.Column('bank_code', sa.String(20), nullable=True),
        sa.Column('bank_name', sa.String(255), nullable=True),
        sa.Column('recipient_code', sa.String(100), nullable=True),
        sa.Column('payout_reference', sa.String(100), nullable=True),
        sa.Column('transfer_code', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, default=0),
        sa.Column('restart_count', sa.Integer(), nullable=False, default=0),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('token_received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('swap_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('usdc_received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payout_initiated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_offramp_transactions_transaction_id', 'offramp_transactions', ['transaction_id'], unique=True
    )
    op.create_index('ix_offramp_transactions_user_id', 'offramp_transactions', ['user_id'])
    op.create_index('ix_offramp_transactions_deposit_address', 'offramp_transactions', ['deposit_address'])
    op.create_index('ix_offramp_transactions_status', 'offramp_transactions', ['status'])
    # One in-flight transaction per deposit address
    op.create_index(
        'ix_offramp_active_deposit_address',
        'offramp_transactions',
        ['deposit_address'],
        unique=True,
        sqlite_where=ACTIVE_WHERE,
        postgresql_where=ACTIVE_WHERE,
    )

    # Fee tiers
    op.create_table(
        'fee_tiers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('min_amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('max_amount', sa.Numeric(20, 2), nullable=True),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('tier_name', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # Runtime settings overrides
    op.create_table(
        'platform_settings',
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('key'),
    )

    # Fee revenue
    op.create_table(
        'offramp_revenue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_id', sa.String(64), nullable=False),
        sa.Column('fee_ngn', sa.Numeric(20, 2), nullable=False),
        sa.Column('fee_in_token', sa.Numeric(36, 18), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'ix_offramp_revenue_transaction_id', 'offramp_revenue', ['transaction_id'], unique=True
    )


def downgrade() -> None:
    op.drop_table('offramp_revenue')
    op.drop_table('platform_settings')
    op.drop_table('fee_tiers')
    op.drop_index('ix_offramp_active_deposit_address', table_name='offramp_transactions')
    op.drop_table('offramp_transactions')
