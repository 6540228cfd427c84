"""initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates parties, catalog pricing, the negotiation ledger and the audit log.
Enums are VARCHAR + CHECK constraints so the schema runs on PostgreSQL and SQLite.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


PARTY_TYPES = ('company', 'supplier', 'service_provider')
QUOTE_STATUSES = ('pending', 'responded', 'accepted', 'rejected', 'expired', 'cancelled', 'deleted')
PRICE_TYPES = ('default', 'private')


def _enum(values, name, length):
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=length)


def upgrade() -> None:
    # Parties
    op.create_table('parties',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('party_type', _enum(PARTY_TYPES, 'partytype', 30), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_parties_id', 'parties', ['id'])
    op.create_index('ix_parties_party_type', 'parties', ['party_type'])

    # Users
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255)),
        sa.Column('party_id', sa.Integer(), sa.ForeignKey('parties.id'), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Products
    op.create_table('products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('supplier_id', sa.Integer(), sa.ForeignKey('parties.id'), nullable=False),
        sa.Column('sku', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('category', sa.String(255)),
        sa.Column('unit', sa.String(50), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index('ix_products_id', 'products', ['id'])
    op.create_index('ix_products_supplier_id', 'products', ['supplier_id'])

    # Default prices
    op.create_table('default_prices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('effective_from', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('effective_until', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('amount >= 0', name='ck_default_price_amount_non_negative'),
    )
    op.create_index('ix_default_prices_id', 'default_prices', ['id'])
    op.create_index(
        'uq_default_prices_active_product', 'default_prices', ['product_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )

    # Private prices
    op.create_table('private_prices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('party_id', sa.Integer(), sa.ForeignKey('parties.id'), nullable=False),
        sa.Column('fixed_price', sa.Numeric(12, 2)),
        sa.Column('discount_percentage', sa.Numeric(5, 2)),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('effective_from', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('effective_until', sa.DateTime(timezone=True)),
        sa.Column('notes', sa.Text()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            '(fixed_price IS NULL) <> (discount_percentage IS NULL)',
            name='ck_private_price_one_override',
        ),
        sa.CheckConstraint(
            'discount_percentage IS NULL OR (discount_percentage >= 0 AND discount_percentage <= 100)',
            name='ck_private_price_discount_range',
        ),
        sa.CheckConstraint('fixed_price IS NULL OR fixed_price >= 0', name='ck_private_price_fixed_non_negative'),
    )
    op.create_index('ix_private_prices_id', 'private_prices', ['id'])
    op.create_index('ix_private_prices_party_id', 'private_prices', ['party_id'])
    op.create_index(
        'uq_private_prices_active_pair', 'private_prices', ['product_id', 'party_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )

    # Price audit trail
    op.create_table('price_audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('price_type', _enum(PRICE_TYPES, 'pricetype', 20), nullable=False),
        sa.Column('party_id', sa.Integer(), sa.ForeignKey('parties.id')),
        sa.Column('old_amount', sa.Numeric(12, 2)),
        sa.Column('new_amount', sa.Numeric(12, 2)),
        sa.Column('old_discount', sa.Numeric(5, 2)),
        sa.Column('new_discount', sa.Numeric(5, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('changed_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('change_reason', sa.Text()),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_price_audit_logs_id', 'price_audit_logs', ['id'])
    op.create_index('ix_price_audit_logs_product_id', 'price_audit_logs', ['product_id'])
    op.create_index('ix_price_audit_logs_changed_at', 'price_audit_logs', ['changed_at'])

    # Quote requests
    op.create_table('quote_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('requesting_party_id', sa.Integer(), sa.ForeignKey('parties.id'), nullable=False),
        sa.Column('target_party_id', sa.Integer(), sa.ForeignKey('parties.id')),
        sa.Column('responding_party_id', sa.Integer(), sa.ForeignKey('parties.id')),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id')),
        sa.Column('title', sa.String(255)),
        sa.Column('description', sa.Text()),
        sa.Column('category', sa.String(255)),
        sa.Column('quantity', sa.Numeric(12, 3)),
        sa.Column('unit', sa.String(50)),
        sa.Column('target_price', sa.Numeric(12, 2)),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('message', sa.Text()),
        sa.Column('status', _enum(QUOTE_STATUSES, 'quotestatus', 20), nullable=False, server_default='pending'),
        sa.Column('expires_at', sa.DateTime(timezone=True)),
        sa.Column('requested_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('responded_at', sa.DateTime(timezone=True)),
        sa.Column('closed_at', sa.DateTime(timezone=True)),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint('quantity IS NULL OR quantity > 0', name='ck_quote_request_quantity_positive'),
        sa.CheckConstraint('target_price IS NULL OR target_price >= 0', name='ck_quote_request_target_price'),
    )
    op.create_index('ix_quote_requests_id', 'quote_requests', ['id'])
    op.create_index('ix_quote_requests_requesting_party_id', 'quote_requests', ['requesting_party_id'])
    op.create_index('ix_quote_requests_target_party_id', 'quote_requests', ['target_party_id'])
    op.create_index('ix_quote_requests_status', 'quote_requests', ['status'])
    op.create_index('ix_quote_requests_expires_at', 'quote_requests', ['expires_at'])
    op.create_index('ix_quote_requests_created_at', 'quote_requests', ['created_at'])

    # Quote responses (bids)
    op.create_table('quote_responses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quote_request_id', sa.Integer(), sa.ForeignKey('quote_requests.id'), nullable=False),
        sa.Column('responding_party_id', sa.Integer(), sa.ForeignKey('parties.id'), nullable=False),
        sa.Column('responded_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3)),
        sa.Column('unit', sa.String(50)),
        sa.Column('valid_until', sa.DateTime(timezone=True)),
        sa.Column('message', sa.Text()),
        sa.Column('terms', sa.Text()),
        sa.Column('is_accepted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('accepted_at', sa.DateTime(timezone=True)),
        sa.Column('rejected_at', sa.DateTime(timezone=True)),
        sa.Column('rejection_comment', sa.Text()),
        sa.Column('responded_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('price >= 0', name='ck_quote_response_price_non_negative'),
        sa.CheckConstraint('quantity IS NULL OR quantity > 0', name='ck_quote_response_quantity_positive'),
    )
    op.create_index('ix_quote_responses_id', 'quote_responses', ['id'])
    op.create_index('ix_quote_responses_quote_request_id', 'quote_responses', ['quote_request_id'])
    op.create_index('ix_quote_responses_responding_party_id', 'quote_responses', ['responding_party_id'])
    # At most one accepted bid per request
    op.create_index(
        'uq_quote_responses_single_accepted', 'quote_responses', ['quote_request_id'],
        unique=True,
        postgresql_where=sa.text('is_accepted'),
        sqlite_where=sa.text('is_accepted = 1'),
    )

    # Counter-offers
    op.create_table('counter_offers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quote_request_id', sa.Integer(), sa.ForeignKey('quote_requests.id'), nullable=False),
        sa.Column('quote_response_id', sa.Integer(), sa.ForeignKey('quote_responses.id')),
        sa.Column('counter_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('counter_message', sa.Text()),
        sa.Column('created_by_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('counter_price >= 0', name='ck_counter_offer_price_non_negative'),
    )
    op.create_index('ix_counter_offers_id', 'counter_offers', ['id'])
    op.create_index('ix_counter_offers_quote_request_id', 'counter_offers', ['quote_request_id'])
    op.create_index('ix_counter_offers_quote_response_id', 'counter_offers', ['quote_response_id'])

    # Audit log
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('party_id', sa.Integer(), sa.ForeignKey('parties.id')),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('entity_type', sa.String(100)),
        sa.Column('entity_id', sa.Integer()),
        sa.Column('details', sa.JSON()),
    )
    op.create_index('ix_audit_logs_id', 'audit_logs', ['id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_entity_type', 'audit_logs', ['entity_type'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('counter_offers')
    op.drop_index('uq_quote_responses_single_accepted', table_name='quote_responses')
    op.drop_table('quote_responses')
    op.drop_table('quote_requests')
    op.drop_table('price_audit_logs')
    op.drop_index('uq_private_prices_active_pair', table_name='private_prices')
    op.drop_table('private_prices')
    op.drop_index('uq_default_prices_active_product', table_name='default_prices')
    op.drop_table('default_prices')
    op.drop_table('products')
    op.drop_table('users')
    op.drop_table('parties')
