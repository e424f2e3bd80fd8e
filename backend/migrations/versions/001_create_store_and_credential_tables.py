"""Create store and credential tables

Revision ID: 001
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # Create updated_at trigger function (reused by every table)
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
          NEW.updated_at = NOW();
          RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.create_table(
        'store',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('marketplace_code', sa.String(40), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_store_tenant_id', 'store', ['tenant_id'])
    op.create_index('idx_store_tenant_marketplace', 'store', ['tenant_id', 'marketplace_code'])

    # Secrets are stored AES-GCM encrypted; store_id NULL is the tenant-wide scope
    op.create_table(
        'credential',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('store_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('credential_type', sa.String(20), nullable=False),
        sa.Column('key_name', sa.String(100), nullable=False),
        sa.Column('encrypted_value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_credential_tenant_id', 'credential', ['tenant_id'])
    op.create_index(
        'uq_credential_scope',
        'credential',
        ['tenant_id', 'store_id', 'credential_type', 'key_name'],
        unique=True
    )
    op.create_check_constraint(
        'ck_credential_type',
        'credential',
        "credential_type IN ('MARKETPLACE', 'ERP', 'CARRIER')"
    )

    for table in ('store', 'credential'):
        op.execute(f"""
            CREATE TRIGGER update_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade():
    for table in ('credential', 'store'):
        op.execute(f'DROP TRIGGER IF EXISTS update_{table}_updated_at ON {table}')

    op.drop_index('uq_credential_scope', table_name='credential')
    op.drop_index('ix_credential_tenant_id', table_name='credential')
    op.drop_table('credential')

    op.drop_index('idx_store_tenant_marketplace', table_name='store')
    op.drop_index('ix_store_tenant_id', table_name='store')
    op.drop_table('store')

    op.execute('DROP FUNCTION IF EXISTS update_updated_at_column()')
