"""initial payments schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = (
    "'pending_payment', 'paid', 'payment_failed', 'payment_cancelled', "
    "'fulfilling', 'shipped', 'delivered'"
)
PROVIDERS = "'card_rail', 'bill_gateway', 'txn_gateway'"
INTENT_STATUSES = "'created', 'requires_action', 'succeeded', 'failed', 'canceled'"


def upgrade() -> None:
    """Create the order payment schema."""

    # ========================================================================
    # orders
    # ========================================================================
    op.create_table(
        'orders',
        sa.Column('order_ref', sa.String(128), primary_key=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending_payment'),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint(f"status IN ({ORDER_STATUSES})", name='ck_orders_status'),
    )
    op.create_index('idx_orders_status', 'orders', ['status'])
    op.create_index(
        'idx_orders_payment_id',
        'orders',
        ['payment_id'],
        postgresql_where=sa.text('payment_id IS NOT NULL'),
    )

    # ========================================================================
    # payment_intents
    # ========================================================================
    op.create_table(
        'payment_intents',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=False),
        sa.Column('order_ref', sa.String(128), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('provider_metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount_minor > 0', name='ck_payment_intents_amount_positive'),
        sa.CheckConstraint(f"provider IN ({PROVIDERS})", name='ck_payment_intents_provider'),
        sa.CheckConstraint(f"status IN ({INTENT_STATUSES})", name='ck_payment_intents_status'),
        sa.UniqueConstraint('provider', 'provider_payment_id', name='uq_payment_intents_provider_id'),
    )
    op.create_index('idx_payment_intents_order_ref', 'payment_intents', ['order_ref'])
    op.create_index('idx_payment_intents_created_at', 'payment_intents', ['created_at'])

    # ========================================================================
    # payment_records
    # ========================================================================
    op.create_table(
        'payment_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_ref', sa.String(128), nullable=False),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount_minor > 0', name='ck_payment_records_amount_positive'),
        sa.UniqueConstraint('provider', 'provider_payment_id', name='uq_payment_records_provider_id'),
    )
    op.create_index('ix_payment_records_order_ref', 'payment_records', ['order_ref'])

    # ========================================================================
    # commission_records
    # ========================================================================
    op.create_table(
        'commission_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_ref', sa.String(128), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('rate_bps', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.CheckConstraint('amount_minor >= 0', name='ck_commission_records_amount_non_negative'),
        sa.CheckConstraint('rate_bps BETWEEN 0 AND 10000', name='ck_commission_records_rate_bps'),
        sa.UniqueConstraint('order_ref', 'provider_payment_id', name='uq_commission_records_order_payment'),
    )
    op.create_index('ix_commission_records_order_ref', 'commission_records', ['order_ref'])

    # ========================================================================
    # payment_event_log
    # ========================================================================
    op.create_table(
        'payment_event_log',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_ref', sa.String(128), nullable=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=False),
        sa.Column('reported_status', sa.String(64), nullable=False),
        sa.Column('received_via', sa.String(32), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('raw_payload', sa.LargeBinary(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_payment_event_log_order_ref', 'payment_event_log', ['order_ref'])
    op.create_index(
        'idx_payment_event_log_provider_id',
        'payment_event_log',
        ['provider', 'provider_payment_id'],
    )
    op.create_index(
        'idx_payment_event_log_created_at',
        'payment_event_log',
        ['created_at'],
        postgresql_using='brin',
    )

    # ========================================================================
    # reconciliation_conflicts
    # ========================================================================
    op.create_table(
        'reconciliation_conflicts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('order_ref', sa.String(128), nullable=False),
        sa.Column('order_status', sa.String(32), nullable=False),
        sa.Column('order_payment_id', sa.String(255), nullable=True),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('provider_payment_id', sa.String(255), nullable=False),
        sa.Column('reported_status', sa.String(64), nullable=False),
        sa.Column('received_via', sa.String(32), nullable=False),
        sa.Column('detail', sa.Text(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_reconciliation_conflicts_order_ref', 'reconciliation_conflicts', ['order_ref'])
    op.create_index(
        'idx_reconciliation_conflicts_unresolved',
        'reconciliation_conflicts',
        ['created_at'],
        postgresql_where=sa.text('resolved = false'),
    )


def downgrade() -> None:
    """Drop the order payment schema."""
    op.drop_table('reconciliation_conflicts')
    op.drop_table('payment_event_log')
    op.drop_table('commission_records')
    op.drop_table('payment_records')
    op.drop_table('payment_intents')
    op.drop_table('orders')
