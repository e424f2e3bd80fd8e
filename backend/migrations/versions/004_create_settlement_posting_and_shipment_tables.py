"""Create settlement_batch, settlement_line, posting and shipment tables

Revision ID: 004
Revises: 003
Create Date: 2026-03-01 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '004'
down_revision = '003'
branch_labels = None
depends_on = None

TABLES = ('settlement_batch', 'settlement_line', 'posting', 'shipment')


def upgrade():
    op.create_table(
        'settlement_batch',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('marketplace_code', sa.String(40), nullable=False),
        sa.Column('settlement_cycle', sa.String(20), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('marketplace_settlement_id', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('declared_gross_sales_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('declared_commission_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('declared_pg_fee_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('declared_shipping_fee_charged', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('declared_shipping_fee_settled', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('expected_payout_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('actual_payout_amount', sa.BigInteger(), nullable=True),
        sa.Column('net_payout_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_order_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('matched_order_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('unmatched_order_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_error_code', sa.String(60), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('last_error_kind', sa.String(20), nullable=True),
        sa.Column('discrepancy', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('commission_posting_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('receipt_posting_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('shipping_adjustment_posting_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('collected_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('validated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('posted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('closed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['store.id'], ondelete='CASCADE'),
        sa.UniqueConstraint(
            'tenant_id', 'store_id', 'marketplace_code', 'settlement_cycle', 'period_start', 'period_end',
            name='uq_settlement_batch_period'
        )
    )
    op.create_index('ix_settlement_batch_tenant_id', 'settlement_batch', ['tenant_id'])
    op.create_index('idx_settlement_batch_retry', 'settlement_batch', ['status', 'is_active', 'next_retry_at'])
    op.create_check_constraint(
        'ck_settlement_batch_period',
        'settlement_batch',
        'period_start <= period_end'
    )

    op.create_table(
        'settlement_line',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('batch_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('marketplace_order_id', sa.String(100), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('gross_sales_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('commission_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('pg_fee_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('shipping_fee_charged', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('shipping_fee_settled', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('net_payout_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['batch_id'], ['settlement_batch.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['order_id'], ['marketplace_order.id'], ondelete='SET NULL')
    )
    op.create_index('ix_settlement_line_tenant_id', 'settlement_line', ['tenant_id'])

    # idempotency_key = sha256(tenant:order or batch id:posting_type)
    op.create_table(
        'posting',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('idempotency_key', sa.String(64), nullable=False),
        sa.Column('reference', sa.String(200), nullable=False),
        sa.Column('posting_type', sa.String(40), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('settlement_batch_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('erp_code', sa.String(40), nullable=False),
        sa.Column('supply_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('vat_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('document_payload', sa.Text(), nullable=True),
        sa.Column('erp_document_no', sa.String(100), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_error_code', sa.String(60), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('last_error_kind', sa.String(20), nullable=True),
        sa.Column('requested_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('posted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['marketplace_order.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['settlement_batch_id'], ['settlement_batch.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_posting_idempotency_key')
    )
    op.create_index('ix_posting_tenant_id', 'posting', ['tenant_id'])
    op.create_index('idx_posting_status_retry', 'posting', ['status', 'is_active', 'next_retry_at'])
    op.create_index('idx_posting_order', 'posting', ['tenant_id', 'order_id'])

    op.create_table(
        'shipment',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('marketplace_code', sa.String(40), nullable=False),
        sa.Column('marketplace_order_id', sa.String(100), nullable=False),
        sa.Column('carrier_code', sa.String(40), nullable=True),
        sa.Column('carrier_name', sa.Text(), nullable=True),
        sa.Column('tracking_no', sa.String(100), nullable=True),
        sa.Column('previous_tracking_no', sa.String(100), nullable=True),
        sa.Column('shipment_status', sa.String(30), nullable=False),
        sa.Column('market_push_status', sa.String(20), nullable=False),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_attempted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('pushed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('shipped_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_error_code', sa.String(60), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['marketplace_order.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['store_id'], ['store.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('tenant_id', 'order_id', name='uq_shipment_order')
    )
    op.create_index('ix_shipment_tenant_id', 'shipment', ['tenant_id'])
    op.create_index('idx_shipment_push_retry', 'shipment', ['market_push_status', 'is_active', 'next_retry_at'])

    for table in TABLES:
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade():
    for table in reversed(TABLES):
        op.execute(f'DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}')

    op.drop_index('idx_shipment_push_retry', table_name='shipment')
    op.drop_index('ix_shipment_tenant_id', table_name='shipment')
    op.drop_table('shipment')

    op.drop_index('idx_posting_order', table_name='posting')
    op.drop_index('idx_posting_status_retry', table_name='posting')
    op.drop_index('ix_posting_tenant_id', table_name='posting')
    op.drop_table('posting')

    op.drop_index('ix_settlement_line_tenant_id', table_name='settlement_line')
    op.drop_table('settlement_line')

    op.drop_index('idx_settlement_batch_retry', table_name='settlement_batch')
    op.drop_index('ix_settlement_batch_tenant_id', table_name='settlement_batch')
    op.drop_table('settlement_batch')
