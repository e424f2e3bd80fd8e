"""Create sync_job, marketplace_order and marketplace_order_item tables

Revision ID: 002
Revises: 001
Create Date: 2026-03-01 09:10:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None

TABLES = ('sync_job', 'marketplace_order', 'marketplace_order_item')


def upgrade():
    op.create_table(
        'sync_job',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('trigger_type', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('sync_start_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('sync_end_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('total_fetched', sa.Integer(), server_default='0', nullable=False),
        sa.Column('created_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('updated_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('failed_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('active_lock', sa.String(10), nullable=True),
        sa.Column('last_error_code', sa.String(60), nullable=True),
        sa.Column('last_error_message', sa.Text(), nullable=True),
        sa.Column('last_error_kind', sa.String(20), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('finished_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['store.id'], ondelete='CASCADE'),
        # active_lock is set only while PENDING/RUNNING: one running job per store
        sa.UniqueConstraint('tenant_id', 'store_id', 'active_lock', name='uq_sync_job_store_active')
    )
    op.create_index('ix_sync_job_tenant_id', 'sync_job', ['tenant_id'])
    op.create_index('idx_sync_job_retry', 'sync_job', ['status', 'is_active', 'next_retry_at'])

    op.create_table(
        'marketplace_order',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('marketplace_code', sa.String(40), nullable=False),
        sa.Column('marketplace_order_id', sa.String(100), nullable=False),
        sa.Column('order_status', sa.String(30), nullable=False),
        sa.Column('ordered_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('buyer_name', sa.Text(), nullable=True),
        sa.Column('total_product_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('shipping_fee', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('total_paid_amount', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('commission_amount', sa.BigInteger(), nullable=True),
        sa.Column('pg_fee', sa.BigInteger(), nullable=True),
        sa.Column('shipping_fee_settled', sa.BigInteger(), nullable=True),
        sa.Column('posting_status', sa.String(30), nullable=False),
        sa.Column('settlement_status', sa.String(30), nullable=False),
        sa.Column('last_sync_job_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('raw_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['store.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['last_sync_job_id'], ['sync_job.id'], ondelete='SET NULL'),
        sa.UniqueConstraint(
            'tenant_id', 'store_id', 'marketplace_code', 'marketplace_order_id',
            name='uq_order_marketplace_key'
        )
    )
    op.create_index('ix_marketplace_order_tenant_id', 'marketplace_order', ['tenant_id'])

    op.create_table(
        'marketplace_order_item',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('line_no', sa.Integer(), nullable=False),
        sa.Column('marketplace_item_id', sa.String(100), nullable=True),
        sa.Column('marketplace_product_id', sa.String(100), nullable=False),
        sa.Column('marketplace_sku', sa.String(100), nullable=True),
        sa.Column('product_name', sa.Text(), nullable=True),
        sa.Column('option_name', sa.Text(), nullable=True),
        sa.Column('quantity', sa.Integer(), server_default='1', nullable=False),
        sa.Column('unit_price', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('line_total', sa.BigInteger(), server_default='0', nullable=False),
        sa.Column('item_status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['order_id'], ['marketplace_order.id'], ondelete='CASCADE')
    )
    op.create_index('ix_marketplace_order_item_tenant_id', 'marketplace_order_item', ['tenant_id'])
    op.create_check_constraint(
        'ck_marketplace_order_item_quantity',
        'marketplace_order_item',
        'quantity >= 0'
    )

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

    op.drop_index('ix_marketplace_order_item_tenant_id', table_name='marketplace_order_item')
    op.drop_table('marketplace_order_item')

    op.drop_index('ix_marketplace_order_tenant_id', table_name='marketplace_order')
    op.drop_table('marketplace_order')

    op.drop_index('idx_sync_job_retry', table_name='sync_job')
    op.drop_index('ix_sync_job_tenant_id', table_name='sync_job')
    op.drop_table('sync_job')
