"""initial billing and payout schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _enum(name, *values):
    return sa.Enum(*values, name=name)


def upgrade():
    op.create_table(
        'catalog_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('category', _enum('catalogcategory', 'team', 'one_to_one', 'addon'), nullable=False),
        sa.Column('delivery_mode', _enum('deliverymode', 'online', 'in_person', 'hybrid'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_catalog_entries_code', 'catalog_entries', ['code'], unique=True)
    op.create_index('ix_catalog_entries_category', 'catalog_entries', ['category'])

    op.create_table(
        'price_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('target_id', sa.Uuid(), nullable=False),
        sa.Column('price_minor', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('effective_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('superseded_at', sa.DateTime(), nullable=True),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['target_id'], ['catalog_entries.id']),
    )
    op.create_index('ix_price_records_target_id', 'price_records', ['target_id'])
    op.create_index('ix_price_records_is_active', 'price_records', ['is_active'])
    op.create_index('ix_price_records_target_active', 'price_records', ['target_id', 'is_active'])

    op.create_table(
        'payout_rules',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('target_id', sa.Uuid(), nullable=False),
        sa.Column('payout_kind', _enum('payoutkind', 'percent', 'fixed'), nullable=False),
        sa.Column('payout_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('platform_fee_kind', _enum('platformfeekind', 'none', 'percent', 'fixed'), nullable=False),
        sa.Column('platform_fee_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('recipient_role', _enum('payoutrecipientrole', 'primary_coach', 'addon_staff'), nullable=False),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['target_id'], ['catalog_entries.id']),
    )
    op.create_index('ix_payout_rules_target_id', 'payout_rules', ['target_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscriber_id', sa.Uuid(), nullable=False),
        sa.Column('service_id', sa.Uuid(), nullable=False),
        sa.Column('staff_id', sa.Uuid(), nullable=True),
        sa.Column(
            'status',
            _enum('subscriptionstatus', 'pending', 'active', 'past_due', 'inactive', 'cancelled'),
            nullable=False,
        ),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('past_due_since', sa.DateTime(), nullable=True),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('billing_amount_override_minor', sa.Integer(), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['service_id'], ['catalog_entries.id']),
    )
    op.create_index('ix_subscriptions_subscriber_id', 'subscriptions', ['subscriber_id'])
    op.create_index('ix_subscriptions_service_id', 'subscriptions', ['service_id'])
    op.create_index('ix_subscriptions_staff_id', 'subscriptions', ['staff_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_billing_date', 'subscriptions', ['next_billing_date'])
    op.create_index('ix_subscriptions_status_next_billing', 'subscriptions', ['status', 'next_billing_date'])

    op.create_table(
        'subscription_payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('source', _enum('paymentsource', 'gateway', 'manual'), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=False),
        sa.Column('created_by', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.UniqueConstraint('subscription_id', 'reference', name='uq_subscription_payments_reference'),
    )
    op.create_index('ix_subscription_payments_id', 'subscription_payments', ['id'])
    op.create_index('ix_subscription_payments_subscription_id', 'subscription_payments', ['subscription_id'])

    op.create_table(
        'payment_exemptions',
        sa.Column('subscriber_id', sa.Uuid(), primary_key=True),
        sa.Column('is_exempt', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_payment_exemptions_is_exempt', 'payment_exemptions', ['is_exempt'])

    op.create_table(
        'discount_redemptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('discount_code', sa.String(), nullable=True),
        sa.Column('amount_saved_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('applied_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
    )
    op.create_index('ix_discount_redemptions_subscription_id', 'discount_redemptions', ['subscription_id'])
    op.create_index('ix_discount_redemptions_applied_at', 'discount_redemptions', ['applied_at'])

    op.create_table(
        'addon_purchases',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('buyer_id', sa.Uuid(), nullable=False),
        sa.Column('addon_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('staff_id', sa.Uuid(), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('billing_type', _enum('addonbillingtype', 'recurring', 'one_time'), nullable=False),
        sa.Column(
            'status',
            _enum('addonpurchasestatus', 'active', 'exhausted', 'expired', 'cancelled'),
            nullable=False,
        ),
        sa.Column('total_paid_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payout_owed_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('remaining_sessions', sa.Integer(), nullable=True),
        sa.Column('purchased_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['addon_id'], ['catalog_entries.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
    )
    op.create_index('ix_addon_purchases_buyer_id', 'addon_purchases', ['buyer_id'])
    op.create_index('ix_addon_purchases_addon_id', 'addon_purchases', ['addon_id'])
    op.create_index('ix_addon_purchases_subscription_id', 'addon_purchases', ['subscription_id'])
    op.create_index('ix_addon_purchases_staff_id', 'addon_purchases', ['staff_id'])
    op.create_index('ix_addon_purchases_status', 'addon_purchases', ['status'])
    op.create_index('ix_addon_purchases_purchased_at', 'addon_purchases', ['purchased_at'])

    op.create_table(
        'monthly_payout_statements',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('staff_id', sa.Uuid(), nullable=False),
        sa.Column('period', sa.String(length=7), nullable=False),
        sa.Column('client_breakdown', sa.JSON(), nullable=False),
        sa.Column('total_clients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exempt_clients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('gross_revenue_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discounts_applied_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('net_collected_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('base_payout_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('addon_revenue_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('addon_payout_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('platform_fee_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_payout_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('used_fallback_rule', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('fallback_rule_targets', sa.JSON(), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('paid_by', sa.String(), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.UniqueConstraint('staff_id', 'period', name='uq_monthly_payout_statements_staff_period'),
    )
    op.create_index('ix_monthly_payout_statements_staff_id', 'monthly_payout_statements', ['staff_id'])
    op.create_index('ix_monthly_payout_statements_period', 'monthly_payout_statements', ['period'])
    op.create_index('ix_monthly_payout_statements_is_paid', 'monthly_payout_statements', ['is_paid'])

    op.create_table(
        'billing_reminders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('subscriber_id', sa.Uuid(), nullable=False),
        sa.Column(
            'kind',
            _enum('reminderkind', 'upcoming', 'past_due', 'final_warning', 'account_locked', 'manual'),
            nullable=False,
        ),
        sa.Column('reminder_key', sa.String(), nullable=False),
        sa.Column('amount_due_minor', sa.Integer(), nullable=True),
        sa.Column('due_date', sa.DateTime(), nullable=True),
        sa.Column('status', _enum('reminderstatus', 'pending', 'sent', 'failed', 'skipped'), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.UniqueConstraint('subscription_id', 'reminder_key', name='uq_billing_reminders_key'),
    )
    op.create_index('ix_billing_reminders_subscription_id', 'billing_reminders', ['subscription_id'])
    op.create_index('ix_billing_reminders_status', 'billing_reminders', ['status'])

    op.create_table(
        'job_run_locks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('job_name', sa.String(), nullable=False),
        sa.Column('period_key', sa.String(), nullable=False),
        sa.Column('owner', sa.String(), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('job_name', 'period_key', name='uq_job_run_locks_job_period'),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('actor_id', sa.String(), nullable=False),
        sa.Column('actor_role', sa.String(), nullable=True),
        sa.Column(
            'action',
            _enum(
                'auditaction',
                'catalog_entry_created', 'price_changed', 'payout_rule_changed',
                'subscription_created', 'subscription_activated', 'subscription_past_due',
                'subscription_deactivated', 'subscription_cancelled', 'payment_recorded',
                'manual_payment_recorded', 'grace_extended', 'exemption_toggled',
                'reminder_requested', 'payout_calculation_run', 'statement_marked_paid',
            ),
            nullable=False,
        ),
        sa.Column('target_type', sa.String(), nullable=False),
        sa.Column('target_id', sa.String(), nullable=False),
        sa.Column('before_state', sa.JSON(), nullable=True),
        sa.Column('after_state', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    op.create_index('ix_audit_logs_target', 'audit_logs', ['target_type', 'target_id'])


def downgrade():
    for table in (
        'audit_logs', 'job_run_locks', 'billing_reminders', 'monthly_payout_statements',
        'addon_purchases', 'discount_redemptions', 'payment_exemptions', 'subscription_payments',
        'subscriptions', 'payout_rules', 'price_records', 'catalog_entries',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in (
        'auditaction', 'reminderstatus', 'reminderkind', 'addonpurchasestatus', 'addonbillingtype',
        'paymentsource', 'subscriptionstatus', 'payoutrecipientrole', 'platformfeekind', 'payoutkind',
        'deliverymode', 'catalogcategory',
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
