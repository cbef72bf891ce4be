"""membership and billing baseline

Revision ID: 0001_membership_billing
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_membership_billing'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('display_name', sa.String(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(), nullable=True),
        sa.Column('host_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('host_billing_tier', sa.String(16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    # --- clubs (with embedded host billing profile) ---
    op.create_table(
        'clubs',
        sa.Column('id', sa.String(128), primary_key=True),
        sa.Column('host_id', sa.String(128), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('slug', sa.String(), nullable=True, unique=True),
        sa.Column('price', sa.Float(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(8), nullable=False, server_default='aud'),
        sa.Column('pricing_locked', sa.Boolean(), nullable=True),
        sa.Column('price_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('members_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('billing_tier', sa.String(16), nullable=False, server_default='tier_a'),
        sa.Column('billing_status', sa.String(32), nullable=True),
        sa.Column('transaction_fee_percent', sa.Float(), nullable=False, server_default='5'),
        sa.Column('included_members', sa.BigInteger(), nullable=False, server_default='100'),
        sa.Column('soft_limits', sa.JSON(), nullable=True),
        sa.Column('usage_paying_members', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_streak_over_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_streak_below_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_video_uploads_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_bandwidth_gb_month', sa.Float(), nullable=False, server_default='0'),
        sa.Column('usage_logged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('upgrade_scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('upgrade_reason', sa.String(64), nullable=True),
        sa.Column('downgrade_eligible_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('downgrade_reason', sa.String(64), nullable=True),
        sa.Column('billing_customer_id', sa.String(), nullable=True),
        sa.Column('billing_subscription_id', sa.String(), nullable=True),
        sa.Column('billing_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_clubs_host_id', 'clubs', ['host_id'])
    op.create_index('ix_clubs_billing_subscription_id', 'clubs', ['billing_subscription_id'])

    # --- club_memberships ---
    op.create_table(
        'club_memberships',
        sa.Column('user_id', sa.String(128), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('club_id', sa.String(128), sa.ForeignKey('clubs.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('is_member', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('is_trialing', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_type', sa.String(48), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('consecutive_failed_payments', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('external_subscription_id', sa.String(), nullable=True),
        sa.Column('external_customer_id', sa.String(), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index(
        'ix_club_memberships_club_payment_type',
        'club_memberships',
        ['club_id', 'last_payment_type', 'user_id'],
    )
    op.create_index(
        'ix_club_memberships_external_subscription_id', 'club_memberships', ['external_subscription_id']
    )

    # --- payments ---
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('club_id', sa.String(128), nullable=False),
        sa.Column('type', sa.String(48), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(8), nullable=False, server_default='aud'),
        sa.Column('platform_fee_percent', sa.Float(), nullable=False, server_default='0'),
        sa.Column('platform_fee_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('host_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('gateway_session_id', sa.String(), nullable=True),
        sa.Column('gateway_invoice_id', sa.String(), nullable=True),
        sa.Column('gateway_subscription_id', sa.String(), nullable=True),
        sa.Column('gateway_customer_id', sa.String(), nullable=True),
        sa.Column('gateway_payment_intent_id', sa.String(), nullable=True),
        sa.Column('billing_reason', sa.String(48), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('gateway_session_id', 'type', name='uq_payments_session_type'),
        sa.UniqueConstraint('gateway_invoice_id', 'type', name='uq_payments_invoice_type'),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_club_id', 'payments', ['club_id'])
    op.create_index('ix_payments_gateway_subscription_id', 'payments', ['gateway_subscription_id'])
    op.create_index('ix_payments_user_club', 'payments', ['user_id', 'club_id'])

    # --- billing_events ---
    op.create_table(
        'billing_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('club_id', sa.String(128), nullable=False),
        sa.Column('host_id', sa.String(128), nullable=True),
        sa.Column('user_id', sa.String(128), nullable=True),
        sa.Column('type', sa.String(64), nullable=False),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_billing_events_club_id', 'billing_events', ['club_id'])
    op.create_index('ix_billing_events_source_id', 'billing_events', ['source_id'])

    # --- subscription_failures ---
    op.create_table(
        'subscription_failures',
        sa.Column('subscription_id', sa.String(), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('club_id', sa.String(128), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_invoice_id', sa.String(), nullable=True),
        sa.Column('last_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
    )

    # --- billing_analytics_monthly ---
    op.create_table(
        'billing_analytics_monthly',
        sa.Column('club_id', sa.String(128), primary_key=True),
        sa.Column('month', sa.String(7), primary_key=True),
        sa.Column('currency', sa.String(8), nullable=False, server_default='aud'),
        sa.Column('new_subscribers', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('trial_starts', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('trial_conversions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('active_subscribers', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cancellations', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_revenue', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # --- club_usage_snapshots ---
    op.create_table(
        'club_usage_snapshots',
        sa.Column('club_id', sa.String(128), primary_key=True),
        sa.Column('period', sa.String(8), primary_key=True),
        sa.Column('period_key', sa.String(10), primary_key=True),
        sa.Column('tier', sa.String(16), nullable=True),
        sa.Column('paying_members', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('video_uploads', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bandwidth_gb', sa.Float(), nullable=False, server_default='0'),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False),
    )

    # --- membership_audit_logs ---
    op.create_table(
        'membership_audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('club_id', sa.String(128), nullable=False),
        sa.Column('old_status', sa.String(32), nullable=True),
        sa.Column('new_status', sa.String(32), nullable=True),
        sa.Column('reason', sa.String(48), nullable=False),
        sa.Column('changed_by', sa.String(16), nullable=False),
        sa.Column('detail', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_membership_audit_logs_user_club', 'membership_audit_logs', ['user_id', 'club_id'])


def downgrade() -> None:
    op.drop_table('membership_audit_logs')
    op.drop_table('club_usage_snapshots')
    op.drop_table('billing_analytics_monthly')
    op.drop_table('subscription_failures')
    op.drop_table('billing_events')
    op.drop_table('payments')
    op.drop_table('club_memberships')
    op.drop_table('clubs')
    op.drop_table('users')
