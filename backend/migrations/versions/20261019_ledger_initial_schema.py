"""Initial schema: accounts, stock ledger, transfers, open production

Revision ID: 20261019_ledger
Revises:
Create Date: 2026-10-19

This migration adds:
1. Categories, materials and warehouses (master data)
2. WarehouseStock (materialized per material/warehouse stock and average cost)
3. StockLedgerEvent (append-only stock movements)
4. Account and AccountLedgerEvent (append-only balance movements)
5. Transfer, OpenProduction and OpenProductionItem (stock documents)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_ledger'
down_revision = None
branch_labels = None
depends_on = None


def _money():
    return sa.Numeric(precision=18, scale=4)


def upgrade():
    # ==========================================================================
    # 1. MASTER DATA
    # ==========================================================================
    op.create_table('categories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('parent_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['parent_id'], ['categories.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('categories', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_categories_parent_id'), ['parent_id'], unique=False)

    op.create_table('materials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('purchase_unit', sa.String(length=32), nullable=False),
        sa.Column('consumption_unit', sa.String(length=32), nullable=False),
        sa.Column('unit_conversion_factor', _money(), nullable=True),
        sa.Column('average_cost', _money(), nullable=False, server_default='0'),
        sa.Column('default_tax_rate', sa.Numeric(precision=7, scale=4), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('materials', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_materials_category_id'), ['category_id'], unique=False)
        batch_op.create_index('ix_materials_category_active', ['category_id', 'is_active'], unique=False)

    op.create_table('warehouses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('capacity', _money(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sqlite_autoincrement=True
    )

    # ==========================================================================
    # 2. WAREHOUSE STOCK (materialized)
    # ==========================================================================
    op.create_table('warehouse_stocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('material_id', sa.Integer(), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), nullable=False),
        sa.Column('current_stock', _money(), nullable=False, server_default='0'),
        sa.Column('reserved_stock', _money(), nullable=False, server_default='0'),
        sa.Column('minimum_stock', _money(), nullable=False, server_default='0'),
        sa.Column('average_cost', _money(), nullable=False, server_default='0'),
        sa.Column('location', sa.String(length=64), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('material_id', 'warehouse_id', name='uq_warehouse_stocks_material_warehouse'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('warehouse_stocks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_warehouse_stocks_material_id'), ['material_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_warehouse_stocks_warehouse_id'), ['warehouse_id'], unique=False)

    # ==========================================================================
    # 3. STOCK LEDGER (append-only)
    # ==========================================================================
    op.create_table('stock_ledger_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('material_id', sa.Integer(), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('quantity', _money(), nullable=False),
        sa.Column('unit_cost', _money(), nullable=False, server_default='0'),
        sa.Column('reference_type', sa.String(length=32), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ),
        sa.ForeignKeyConstraint(['warehouse_id'], ['warehouses.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_ledger_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_stock_ledger_events_material_id'), ['material_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_ledger_events_warehouse_id'), ['warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_ledger_events_kind'), ['kind'], unique=False)
        batch_op.create_index(batch_op.f('ix_stock_ledger_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_stock_events_key_occurred', ['material_id', 'warehouse_id', 'occurred_at', 'id'], unique=False)
        batch_op.create_index('ix_stock_events_reference', ['reference_type', 'reference_id'], unique=False)

    # ==========================================================================
    # 4. ACCOUNTS AND ACCOUNT LEDGER (append-only)
    # ==========================================================================
    op.create_table('accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('account_type', sa.String(length=16), nullable=False),
        sa.Column('credit_limit', _money(), nullable=True),
        sa.Column('opening_balance', _money(), nullable=False, server_default='0'),
        sa.Column('current_balance', _money(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('accounts', schema=None) as batch_op:
        batch_op.create_index('ix_accounts_type_active', ['account_type', 'is_active'], unique=False)

    op.create_table('account_ledger_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('signed_amount', _money(), nullable=False),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('detail', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('account_ledger_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_account_ledger_events_account_id'), ['account_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_account_ledger_events_kind'), ['kind'], unique=False)
        batch_op.create_index(batch_op.f('ix_account_ledger_events_reference'), ['reference'], unique=False)
        batch_op.create_index(batch_op.f('ix_account_ledger_events_occurred_at'), ['occurred_at'], unique=False)
        batch_op.create_index('ix_account_events_account_occurred', ['account_id', 'occurred_at', 'id'], unique=False)

    # ==========================================================================
    # 5. STOCK DOCUMENTS
    # ==========================================================================
    op.create_table('transfers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('from_warehouse_id', sa.Integer(), nullable=False),
        sa.Column('to_warehouse_id', sa.Integer(), nullable=False),
        sa.Column('material_id', sa.Integer(), nullable=False),
        sa.Column('quantity', _money(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('request_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('unit_cost', _money(), nullable=True),
        sa.Column('total_cost', _money(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('completed_by_user_id', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by_user_id', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['from_warehouse_id'], ['warehouses.id'], ),
        sa.ForeignKeyConstraint(['to_warehouse_id'], ['warehouses.id'], ),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('transfers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_transfers_from_warehouse_id'), ['from_warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_transfers_to_warehouse_id'), ['to_warehouse_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_transfers_material_id'), ['material_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_transfers_status'), ['status'], unique=False)
        batch_op.create_index('ix_transfers_status_request', ['status', 'request_date'], unique=False)

    op.create_table('open_productions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('produced_material_id', sa.Integer(), nullable=False),
        sa.Column('produced_quantity', _money(), nullable=False),
        sa.Column('production_warehouse_id', sa.Integer(), nullable=False),
        sa.Column('consumption_warehouse_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('production_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_cost', _money(), nullable=False, server_default='0'),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['produced_material_id'], ['materials.id'], ),
        sa.ForeignKeyConstraint(['production_warehouse_id'], ['warehouses.id'], ),
        sa.ForeignKeyConstraint(['consumption_warehouse_id'], ['warehouses.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('open_productions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_open_productions_produced_material_id'), ['produced_material_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_open_productions_status'), ['status'], unique=False)

    op.create_table('open_production_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('production_id', sa.Integer(), nullable=False),
        sa.Column('material_id', sa.Integer(), nullable=False),
        sa.Column('quantity', _money(), nullable=False),
        sa.Column('unit_cost', _money(), nullable=False, server_default='0'),
        sa.Column('total_cost', _money(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['production_id'], ['open_productions.id'], ),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('open_production_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_open_production_items_production_id'), ['production_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_open_production_items_material_id'), ['material_id'], unique=False)


def downgrade():
    with op.batch_alter_table('open_production_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_open_production_items_material_id'))
        batch_op.drop_index(batch_op.f('ix_open_production_items_production_id'))
    op.drop_table('open_production_items')

    with op.batch_alter_table('open_productions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_open_productions_status'))
        batch_op.drop_index(batch_op.f('ix_open_productions_produced_material_id'))
    op.drop_table('open_productions')

    with op.batch_alter_table('transfers', schema=None) as batch_op:
        batch_op.drop_index('ix_transfers_status_request')
        batch_op.drop_index(batch_op.f('ix_transfers_status'))
        batch_op.drop_index(batch_op.f('ix_transfers_material_id'))
        batch_op.drop_index(batch_op.f('ix_transfers_to_warehouse_id'))
        batch_op.drop_index(batch_op.f('ix_transfers_from_warehouse_id'))
    op.drop_table('transfers')

    with op.batch_alter_table('account_ledger_events', schema=None) as batch_op:
        batch_op.drop_index('ix_account_events_account_occurred')
        batch_op.drop_index(batch_op.f('ix_account_ledger_events_occurred_at'))
        batch_op.drop_index(batch_op.f('ix_account_ledger_events_reference'))
        batch_op.drop_index(batch_op.f('ix_account_ledger_events_kind'))
        batch_op.drop_index(batch_op.f('ix_account_ledger_events_account_id'))
    op.drop_table('account_ledger_events')

    with op.batch_alter_table('accounts', schema=None) as batch_op:
        batch_op.drop_index('ix_accounts_type_active')
    op.drop_table('accounts')

    with op.batch_alter_table('stock_ledger_events', schema=None) as batch_op:
        batch_op.drop_index('ix_stock_events_reference')
        batch_op.drop_index('ix_stock_events_key_occurred')
        batch_op.drop_index(batch_op.f('ix_stock_ledger_events_occurred_at'))
        batch_op.drop_index(batch_op.f('ix_stock_ledger_events_kind'))
        batch_op.drop_index(batch_op.f('ix_stock_ledger_events_warehouse_id'))
        batch_op.drop_index(batch_op.f('ix_stock_ledger_events_material_id'))
    op.drop_table('stock_ledger_events')

    with op.batch_alter_table('warehouse_stocks', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_warehouse_stocks_warehouse_id'))
        batch_op.drop_index(batch_op.f('ix_warehouse_stocks_material_id'))
    op.drop_table('warehouse_stocks')

    op.drop_table('warehouses')

    with op.batch_alter_table('materials', schema=None) as batch_op:
        batch_op.drop_index('ix_materials_category_active')
        batch_op.drop_index(batch_op.f('ix_materials_category_id'))
    op.drop_table('materials')

    with op.batch_alter_table('categories', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_categories_parent_id'))
    op.drop_table('categories')
