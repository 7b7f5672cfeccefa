"""Add tenants and frequent-buyer loyalty tables.

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-02-09

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'e1f2a3b4c5d6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create tenant, offer, event, reward and bookkeeping tables."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('pos_merchant_id', sa.String(64), nullable=True),
        sa.Column('pos_access_token', sa.Text(), nullable=True),
        sa.Column('settings', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('TRUE')),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )
    op.create_index('ix_tenants_pos_merchant_id', 'tenants', ['pos_merchant_id'], unique=True)

    op.create_table(
        'loyalty_offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('brand_name', sa.String(255), nullable=False),
        sa.Column('size_group', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('required_quantity', sa.Integer(), nullable=False),
        sa.Column('reward_quantity', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('window_months', sa.Integer(), nullable=False, server_default=sa.text('12')),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('TRUE')),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.UniqueConstraint('tenant_id', 'brand_name', 'size_group', name='uq_offer_brand_size'),
    )
    op.create_index('ix_loyalty_offers_tenant_id', 'loyalty_offers', ['tenant_id'])

    op.create_table(
        'loyalty_qualifying_variations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('variation_id', sa.String(64), nullable=False),
        sa.Column('item_id', sa.String(64), nullable=True),
        sa.Column('item_name', sa.String(255), nullable=True),
        sa.Column('variation_name', sa.String(255), nullable=True),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('TRUE')),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id']),
        sa.UniqueConstraint('tenant_id', 'offer_id', 'variation_id', name='uq_offer_variation'),
    )
    op.create_index(
        'ix_qualifying_variation_lookup', 'loyalty_qualifying_variations',
        ['tenant_id', 'variation_id', 'is_active']
    )

    op.create_table(
        'loyalty_rewards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='in_progress'),
        sa.Column('current_quantity', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('required_quantity', sa.Integer(), nullable=False),
        sa.Column('window_start_date', sa.Date(), nullable=True),
        sa.Column('window_end_date', sa.Date(), nullable=True),
        sa.Column('earned_at', sa.DateTime(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('revocation_reason', sa.String(255), nullable=True),
        sa.Column('redemption_id', sa.Integer(), nullable=True),
        sa.Column('redemption_order_id', sa.String(64), nullable=True),
        sa.Column('discount_id', sa.String(64), nullable=True),
        sa.Column('group_id', sa.String(64), nullable=True),
        sa.Column('product_set_id', sa.String(64), nullable=True),
        sa.Column('pricing_rule_id', sa.String(64), nullable=True),
        sa.Column('discount_synced_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id']),
    )
    # At most one in_progress reward per (customer, offer)
    op.create_index(
        'uq_reward_one_in_progress', 'loyalty_rewards',
        ['tenant_id', 'offer_id', 'customer_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
        sqlite_where=sa.text("status = 'in_progress'"),
    )
    op.create_index(
        'ix_rewards_pair_status', 'loyalty_rewards',
        ['tenant_id', 'offer_id', 'customer_id', 'status']
    )

    op.create_table(
        'loyalty_purchase_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('location_id', sa.String(64), nullable=True),
        sa.Column('variation_id', sa.String(64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=True),
        sa.Column('purchased_at', sa.DateTime(), nullable=False),
        sa.Column('window_start_date', sa.Date(), nullable=True),
        sa.Column('window_end_date', sa.Date(), nullable=False),
        sa.Column('is_refund', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('original_event_id', sa.Integer(), nullable=True),
        sa.Column('split_from_event_id', sa.Integer(), nullable=True),
        sa.Column('reward_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        sa.Column('customer_source', sa.String(30), nullable=True),
        sa.Column('payment_type', sa.String(30), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id']),
        sa.ForeignKeyConstraint(['original_event_id'], ['loyalty_purchase_events.id']),
        sa.ForeignKeyConstraint(['split_from_event_id'], ['loyalty_purchase_events.id']),
        sa.ForeignKeyConstraint(['reward_id'], ['loyalty_rewards.id']),
        sa.UniqueConstraint('tenant_id', 'idempotency_key', name='uq_purchase_event_idempotency'),
    )
    op.create_index('ix_purchase_events_pair', 'loyalty_purchase_events', ['tenant_id', 'offer_id', 'customer_id'])
    op.create_index('ix_purchase_events_order', 'loyalty_purchase_events', ['tenant_id', 'order_id'])
    op.create_index('ix_loyalty_purchase_events_reward_id', 'loyalty_purchase_events', ['reward_id'])

    op.create_table(
        'loyalty_redemptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('redemption_type', sa.String(30), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=True),
        sa.Column('location_id', sa.String(64), nullable=True),
        sa.Column('redeemed_variation_id', sa.String(64), nullable=True),
        sa.Column('redeemed_item_name', sa.String(255), nullable=True),
        sa.Column('redeemed_variation_name', sa.String(255), nullable=True),
        sa.Column('redeemed_value_cents', sa.Integer(), nullable=True),
        sa.Column('redeemed_by', sa.String(100), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('redeemed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['reward_id'], ['loyalty_rewards.id']),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id']),
    )
    op.create_index('ix_loyalty_redemptions_reward_id', 'loyalty_redemptions', ['reward_id'])

    op.create_table(
        'loyalty_customer_summaries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('current_quantity', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('required_quantity', sa.Integer(), nullable=True),
        sa.Column('window_start_date', sa.Date(), nullable=True),
        sa.Column('window_end_date', sa.Date(), nullable=True),
        sa.Column('has_earned_reward', sa.Boolean(), nullable=True, server_default=sa.text('FALSE')),
        sa.Column('earned_reward_id', sa.Integer(), nullable=True),
        sa.Column('total_lifetime_purchases', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('total_rewards_earned', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('total_rewards_redeemed', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('last_purchase_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['offer_id'], ['loyalty_offers.id']),
        sa.UniqueConstraint('tenant_id', 'customer_id', 'offer_id', name='uq_customer_summary'),
    )

    op.create_table(
        'loyalty_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=True),
        sa.Column('reward_id', sa.Integer(), nullable=True),
        sa.Column('purchase_event_id', sa.Integer(), nullable=True),
        sa.Column('redemption_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.String(64), nullable=True),
        sa.Column('order_id', sa.String(64), nullable=True),
        sa.Column('old_state', sa.String(20), nullable=True),
        sa.Column('new_state', sa.String(20), nullable=True),
        sa.Column('old_quantity', sa.Integer(), nullable=True),
        sa.Column('new_quantity', sa.Integer(), nullable=True),
        sa.Column('triggered_by', sa.String(20), nullable=True, server_default='SYSTEM'),
        sa.Column('actor', sa.String(100), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
    )
    op.create_index('ix_audit_tenant_customer', 'loyalty_audit_logs', ['tenant_id', 'customer_id'])
    op.create_index('ix_audit_tenant_reward', 'loyalty_audit_logs', ['tenant_id', 'reward_id'])
    op.create_index('ix_loyalty_audit_logs_created_at', 'loyalty_audit_logs', ['created_at'])

    op.create_table(
        'loyalty_processed_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=True),
        sa.Column('customer_source', sa.String(30), nullable=True),
        sa.Column('result_type', sa.String(30), nullable=False),
        sa.Column('qualifying_items', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('total_line_items', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('error_count', sa.Integer(), nullable=True, server_default=sa.text('0')),
        sa.Column('source', sa.String(20), nullable=True, server_default='webhook'),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.UniqueConstraint('tenant_id', 'order_id', name='uq_processed_order'),
    )

    op.create_table(
        'loyalty_discount_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('offer_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['reward_id'], ['loyalty_rewards.id']),
    )
    op.create_index('ix_discount_tasks_status', 'loyalty_discount_tasks', ['status', 'created_at'])


def downgrade():
    """Drop loyalty tables in reverse dependency order."""
    op.drop_index('ix_discount_tasks_status', table_name='loyalty_discount_tasks')
    op.drop_table('loyalty_discount_tasks')
    op.drop_table('loyalty_processed_orders')
    op.drop_index('ix_loyalty_audit_logs_created_at', table_name='loyalty_audit_logs')
    op.drop_index('ix_audit_tenant_reward', table_name='loyalty_audit_logs')
    op.drop_index('ix_audit_tenant_customer', table_name='loyalty_audit_logs')
    op.drop_table('loyalty_audit_logs')
    op.drop_table('loyalty_customer_summaries')
    op.drop_index('ix_loyalty_redemptions_reward_id', table_name='loyalty_redemptions')
    op.drop_table('loyalty_redemptions')
    op.drop_index('ix_loyalty_purchase_events_reward_id', table_name='loyalty_purchase_events')
    op.drop_index('ix_purchase_events_order', table_name='loyalty_purchase_events')
    op.drop_index('ix_purchase_events_pair', table_name='loyalty_purchase_events')
    op.drop_table('loyalty_purchase_events')
    op.drop_index('ix_rewards_pair_status', table_name='loyalty_rewards')
    op.drop_index('uq_reward_one_in_progress', table_name='loyalty_rewards')
    op.drop_table('loyalty_rewards')
    op.drop_index('ix_qualifying_variation_lookup', table_name='loyalty_qualifying_variations')
    op.drop_table('loyalty_qualifying_variations')
    op.drop_index('ix_loyalty_offers_tenant_id', table_name='loyalty_offers')
    op.drop_table('loyalty_offers')
    op.drop_index('ix_tenants_pos_merchant_id', table_name='tenants')
    op.drop_table('tenants')
