"""Create product_mapping and erp_item tables

Revision ID: 003
Revises: 002
Create Date: 2026-03-01 09:20:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '003'
down_revision = '002'
branch_labels = None
depends_on = None

TABLES = ('product_mapping', 'erp_item')


def upgrade():
    op.create_table(
        'product_mapping',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('marketplace_code', sa.String(40), nullable=False),
        sa.Column('marketplace_product_id', sa.String(100), nullable=False),
        sa.Column('marketplace_sku', sa.String(100), server_default='', nullable=False),
        sa.Column('product_name', sa.Text(), nullable=True),
        sa.Column('option_name', sa.Text(), nullable=True),
        sa.Column('erp_code', sa.String(40), nullable=True),
        sa.Column('erp_item_code', sa.String(100), nullable=True),
        sa.Column('erp_item_name', sa.Text(), nullable=True),
        sa.Column('warehouse_code', sa.String(40), nullable=True),
        sa.Column('mapping_status', sa.String(20), nullable=False),
        sa.Column('mapping_type', sa.String(20), nullable=False),
        sa.Column('confidence', sa.Numeric(5, 4), server_default='0.0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('mapped_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('mapped_by', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_product_mapping_tenant_id', 'product_mapping', ['tenant_id'])

    # One active mapping per key scope; inactive rows are kept as history
    op.create_index(
        'uq_product_mapping_store_scope_active',
        'product_mapping',
        ['tenant_id', 'store_id', 'marketplace_code', 'marketplace_product_id', 'marketplace_sku'],
        unique=True,
        postgresql_where=sa.text('is_active AND store_id IS NOT NULL')
    )
    op.create_index(
        'uq_product_mapping_tenant_scope_active',
        'product_mapping',
        ['tenant_id', 'marketplace_code', 'marketplace_product_id', 'marketplace_sku'],
        unique=True,
        postgresql_where=sa.text('is_active AND store_id IS NULL')
    )
    op.create_index('idx_product_mapping_status', 'product_mapping', ['tenant_id', 'mapping_status', 'is_active'])

    op.create_check_constraint(
        'ck_product_mapping_status',
        'product_mapping',
        "mapping_status IN ('UNMAPPED', 'SUGGESTED', 'MAPPED')"
    )
    op.create_check_constraint(
        'ck_product_mapping_confidence',
        'product_mapping',
        'confidence >= 0.0 AND confidence <= 1.0'
    )

    op.create_table(
        'erp_item',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('erp_code', sa.String(40), nullable=False),
        sa.Column('item_code', sa.String(100), nullable=False),
        sa.Column('item_name', sa.Text(), nullable=False),
        sa.Column('item_spec', sa.Text(), nullable=True),
        sa.Column('warehouse_code', sa.String(40), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'erp_code', 'item_code', name='uq_erp_item_code')
    )
    op.create_index('ix_erp_item_tenant_id', 'erp_item', ['tenant_id'])

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

    op.drop_index('ix_erp_item_tenant_id', table_name='erp_item')
    op.drop_table('erp_item')

    op.drop_index('idx_product_mapping_status', table_name='product_mapping')
    op.drop_index('uq_product_mapping_tenant_scope_active', table_name='product_mapping')
    op.drop_index('uq_product_mapping_store_scope_active', table_name='product_mapping')
    op.drop_index('ix_product_mapping_tenant_id', table_name='product_mapping')
    op.drop_table('product_mapping')
