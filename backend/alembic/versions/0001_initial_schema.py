"""initial schema: watched addresses, deposits, settlement, payouts, security

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(precision=28, scale=8)


def upgrade() -> None:
    op.create_table(
        'watched_addresses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('address', sa.String(length=128), nullable=False),
        sa.Column('label', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('added_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('added_by', sa.String(length=64), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('watermark', sa.Integer(), nullable=True),
        sa.UniqueConstraint('chain', 'address', name='uq_watched_chain_address'),
    )
    op.create_index('ix_watched_addresses_chain', 'watched_addresses', ['chain'])

    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('txid', sa.String(length=128), nullable=False),
        sa.Column('vout', sa.Integer(), nullable=False),
        sa.Column('address', sa.String(length=128), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('block_height', sa.Integer(), nullable=True),
        sa.Column('confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('state', sa.String(length=20), nullable=False, server_default='seen'),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('chain', 'txid', 'vout', name='uq_deposit_key'),
    )
    op.create_index('ix_deposits_address', 'deposits', ['address'])
    op.create_index('ix_deposits_state', 'deposits', ['state'])

    op.create_table(
        'outbound_txs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('txid', sa.String(length=128), nullable=False),
        sa.Column('block_height', sa.Integer(), nullable=True),
        sa.Column('confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('chain', 'txid', name='uq_outbound_chain_txid'),
    )

    op.create_table(
        'auto_settlement_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('destination_address', sa.String(length=128), nullable=False),
        sa.Column('percentage_bps', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=100), nullable=False, server_default=''),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('min_threshold', AMOUNT, nullable=False, server_default='0'),
        sa.Column('max_amount', AMOUNT, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_auto_settlement_rules_chain', 'auto_settlement_rules', ['chain'])

    op.create_table(
        'settlement_executions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('deposit_id', sa.Integer(), sa.ForeignKey('deposits.id'), nullable=False, unique=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('deposit_amount', AMOUNT, nullable=False),
        sa.Column('total_settled', AMOUNT, nullable=False, server_default='0'),
        sa.Column('residual', AMOUNT, nullable=False, server_default='0'),
        sa.Column('rules_applied', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('batch_id', sa.String(length=32), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('chain', sa.String(length=10), nullable=False),
        sa.Column('to_address', sa.String(length=128), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('fee', AMOUNT, nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default='normal'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('txid', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.String(length=500), nullable=False, server_default=''),
        sa.Column('batch_id', sa.String(length=32), nullable=True),
        sa.Column('source_deposit_id', sa.Integer(), sa.ForeignKey('deposits.id'), nullable=True),
        sa.Column('rule_id', sa.Integer(), sa.ForeignKey('auto_settlement_rules.id'), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.Column('signed_tx', sa.Text(), nullable=True),
        sa.UniqueConstraint('source_deposit_id', 'rule_id', name='uq_payout_deposit_rule'),
    )
    op.create_index('ix_payouts_status', 'payouts', ['status'])
    op.create_index('ix_payouts_txid', 'payouts', ['txid'])
    op.create_index('ix_payouts_batch_id', 'payouts', ['batch_id'])

    op.create_table(
        'transaction_pins',
        sa.Column('user_id', sa.String(length=64), primary_key=True),
        sa.Column('pin_hash', sa.String(length=128), nullable=False),
        sa.Column('salt', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'security_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('details', sa.Text(), nullable=False, server_default=''),
    )
    op.create_index('ix_security_events_at', 'security_events', ['at'])
    op.create_index('ix_security_events_user_id', 'security_events', ['user_id'])

    op.create_table(
        'dead_letters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=30), nullable=False),
        sa.Column('ref_id', sa.Integer(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(length=500), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('kind', 'ref_id', name='uq_dead_letter_kind_ref'),
    )


def downgrade() -> None:
    raise NotImplementedError("migrations are forward-only")
