"""initial_schema

Revision ID: 3f9a1c7d2e40
Revises:
Create Date: 2026-10-18 09:12:41.503218+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f9a1c7d2e40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 1. organizations (no FKs)
    op.create_table('organizations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('slug', sa.String(length=50), nullable=False),
    sa.Column('approval_threshold', sa.Numeric(precision=12, scale=2), server_default='50.00', nullable=False),
    sa.Column('auto_approve_admin', sa.Boolean(), server_default=sa.text('true'), nullable=False),
    sa.Column('default_currency', sa.String(length=3), server_default='GBP', nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('slug')
    )
    op.create_index('idx_organizations_slug', 'organizations', ['slug'], unique=False)

    # 2. users (id mirrors the identity provider subject)
    op.create_table('users',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('organization_id', sa.UUID(), nullable=True),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=True),
    sa.Column('role', sa.String(length=20), server_default='VIEWER', nullable=False),
    sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email'),
    sa.CheckConstraint("role IN ('VIEWER', 'MANAGER', 'ADMIN', 'SUPER_ADMIN')", name='chk_users_role')
    )
    op.create_index('idx_users_organization', 'users', ['organization_id'], unique=False)
    op.create_index('idx_users_role', 'users', ['organization_id', 'role'], unique=False)

    # 3. counters
    op.create_table('counters',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('organization_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=50), nullable=False),
    sa.Column('value', sa.BigInteger(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('organization_id', 'name', name='uq_counter_org_name')
    )

    # 4. tax_rates
    op.create_table('tax_rates',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('organization_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=100), nullable=False),
    sa.Column('rate', sa.Numeric(precision=5, scale=2), nullable=False),
    sa.Column('is_default', sa.Boolean(), server_default=sa.text('false'), nullable=False),
    sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('rate >= 0 AND rate <= 100', name='chk_tax_rate_range'),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('organization_id', 'name', name='uq_tax_rate_org_name')
    )

    # 5. purchase_orders
    op.create_table('purchase_orders',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('organization_id', sa.UUID(), nullable=False),
    sa.Column('po_number', sa.String(length=50), nullable=False),
    sa.Column('title', sa.String(length=200), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('tax_mode', sa.String(length=20), nullable=True),
    sa.Column('tax_rate', sa.Numeric(precision=5, scale=2), nullable=True),
    sa.Column('tax_rate_id', sa.UUID(), nullable=True),
    sa.Column('subtotal_amount', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('tax_amount', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('supplier_name', sa.String(length=200), nullable=False),
    sa.Column('supplier_email', sa.String(length=255), nullable=True),
    sa.Column('supplier_phone', sa.String(length=50), nullable=True),
    sa.Column('supplier_address', sa.String(length=500), nullable=True),
    sa.Column('order_date', sa.DateTime(), nullable=True),
    sa.Column('delivery_date', sa.DateTime(), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('created_by_id', sa.UUID(), nullable=True),
    sa.Column('invoice_upload_token', sa.String(length=128), nullable=True),
    sa.Column('invoice_upload_token_expires_at', sa.DateTime(), nullable=True),
    sa.Column('invoice_url', sa.Text(), nullable=True),
    sa.Column('invoice_received_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint(
        "status IN ('DRAFT', 'PENDING_APPROVAL', 'APPROVED', 'SENT', 'RECEIVED', 'INVOICED', 'CANCELLED')",
        name='chk_po_status',
    ),
    sa.CheckConstraint("tax_mode IN ('NONE', 'EXCLUSIVE', 'INCLUSIVE')", name='chk_po_tax_mode'),
    sa.ForeignKeyConstraint(['created_by_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['tax_rate_id'], ['tax_rates.id'], ondelete='SET NULL'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('invoice_upload_token'),
    sa.UniqueConstraint('organization_id', 'po_number', name='uq_po_org_number')
    )
    op.create_index('idx_po_organization', 'purchase_orders', ['organization_id'], unique=False)
    op.create_index('idx_po_status', 'purchase_orders', ['organization_id', 'status'], unique=False)

    # 6. po_line_items
    op.create_table('po_line_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('purchase_order_id', sa.UUID(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('description', sa.String(length=500), nullable=False),
    sa.Column('quantity', sa.Numeric(precision=12, scale=3), nullable=False),
    sa.Column('unit_price', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('total_price', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.CheckConstraint('quantity > 0', name='chk_po_line_qty'),
    sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('purchase_order_id', 'line_number', name='uq_po_line_item')
    )
    op.create_index('idx_po_items_po', 'po_line_items', ['purchase_order_id'], unique=False)

    # 7. approval_requests (one live request per PO; resubmission soft-deletes the old one)
    op.create_table('approval_requests',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('organization_id', sa.UUID(), nullable=False),
    sa.Column('purchase_order_id', sa.UUID(), nullable=False),
    sa.Column('requester_id', sa.UUID(), nullable=False),
    sa.Column('approver_id', sa.UUID(), nullable=True),
    sa.Column('status', sa.String(length=20), nullable=False),
    sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('decided_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.Column('deleted_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint("status IN ('PENDING', 'APPROVED', 'DENIED')", name='chk_approval_status'),
    sa.ForeignKeyConstraint(['approver_id'], ['users.id'], ),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['purchase_order_id'], ['purchase_orders.id'], ),
    sa.ForeignKeyConstraint(['requester_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'uq_approval_request_active_po', 'approval_requests', ['purchase_order_id'],
        unique=True, postgresql_where=sa.text('deleted_at IS NULL'),
    )
    op.create_index('idx_approval_requests_org_status', 'approval_requests', ['organization_id', 'status'], unique=False)

    # 8. approval_actions (append-only)
    op.create_table('approval_actions',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('approval_request_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=False),
    sa.Column('action', sa.String(length=20), nullable=False),
    sa.Column('reason', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.CheckConstraint("action IN ('SUBMITTED', 'APPROVED', 'DENIED')", name='chk_approval_action'),
    sa.ForeignKeyConstraint(['approval_request_id'], ['approval_requests.id'], ),
    sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_approval_actions_request', 'approval_actions', ['approval_request_id', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('idx_approval_actions_request', table_name='approval_actions')
    op.drop_table('approval_actions')
    op.drop_index('idx_approval_requests_org_status', table_name='approval_requests')
    op.drop_index('uq_approval_request_active_po', table_name='approval_requests')
    op.drop_table('approval_requests')
    op.drop_index('idx_po_items_po', table_name='po_line_items')
    op.drop_table('po_line_items')
    op.drop_index('idx_po_status', table_name='purchase_orders')
    op.drop_index('idx_po_organization', table_name='purchase_orders')
    op.drop_table('purchase_orders')
    op.drop_table('tax_rates')
    op.drop_table('counters')
    op.drop_index('idx_users_role', table_name='users')
    op.drop_index('idx_users_organization', table_name='users')
    op.drop_table('users')
    op.drop_index('idx_organizations_slug', table_name='organizations')
    op.drop_table('organizations')
