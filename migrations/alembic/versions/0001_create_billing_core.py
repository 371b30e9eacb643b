"""create billing core tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.engine import Connection


revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(conn: Connection, table_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name = :name)"
        ),
        {'name': table_name},
    )
    return bool(result.scalar())


def _has_index(conn: Connection, index_name: str) -> bool:
    result = conn.execute(
        sa.text(
            "SELECT EXISTS (SELECT 1 FROM pg_indexes "
            "WHERE schemaname = 'public' AND indexname = :index_name)"
        ),
        {'index_name': index_name},
    )
    return bool(result.scalar())


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    ]


def _token_column(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text('0'))


INDEXES = (
    ('ix_users_email', 'users', ['email'], True),
    ('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'], False),
    ('ix_users_referred_by_id', 'users', ['referred_by_id'], False),
    ('ix_plans_stripe_price_id', 'plans', ['stripe_price_id'], False),
    ('ix_plans_stripe_price_id_live', 'plans', ['stripe_price_id_live'], False),
    ('ix_subscriptions_user_id', 'subscriptions', ['user_id'], False),
    ('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'], False),
    ('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], False),
    ('ix_subscriptions_status_next_billing', 'subscriptions', ['status', 'next_billing_date'], False),
    ('ix_purchases_user_id', 'purchases', ['user_id'], False),
    ('ix_token_transactions_user_created', 'token_transactions', ['user_id', 'created_at'], False),
    ('ix_token_usage_user_timestamp', 'token_usage', ['user_id', 'timestamp'], False),
    ('ix_referrals_referrer_id', 'referrals', ['referrer_id'], False),
    ('ix_referrals_referred_id', 'referrals', ['referred_id'], False),
    ('ix_milestone_awards_user_id', 'milestone_awards', ['user_id'], False),
    ('ix_milestone_rewards_user_program', 'milestone_rewards', ['user_id', 'program'], False),
    ('ix_affiliate_sales_affiliate_created', 'affiliate_sales', ['affiliate_id', 'created_at'], False),
)


def upgrade() -> None:
    conn = op.get_bind()

    if not _has_table(conn, 'users'):
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('first_name', sa.String(length=255), nullable=True),
            sa.Column('last_name', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            _token_column('registration_token'),
            _token_column('free_token'),
            _token_column('subscription_token'),
            _token_column('addons_token'),
            sa.Column('referral_code', sa.String(length=64), nullable=True),
            sa.Column('referral_code_created_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('referral_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('referred_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
            sa.Column('sales_count', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('free_plan_used', sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
            sa.UniqueConstraint('referral_code', name='uq_users_referral_code'),
            sa.CheckConstraint('registration_token >= 0', name='ck_users_registration_token_non_negative'),
            sa.CheckConstraint('free_token >= 0', name='ck_users_free_token_non_negative'),
            sa.CheckConstraint('subscription_token >= 0', name='ck_users_subscription_token_non_negative'),
            sa.CheckConstraint('addons_token >= 0', name='ck_users_addons_token_non_negative'),
        )

    if not _has_table(conn, 'plans'):
        op.create_table(
            'plans',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('price', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('interval', sa.String(length=20), nullable=False, server_default='monthly'),
            sa.Column('tokens_per_cycle', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('features', sa.JSON(), nullable=True),
            sa.Column('premium_models_access', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_price_id_live', sa.String(length=255), nullable=True),
            sa.Column('stripe_product_id', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    if not _has_table(conn, 'subscriptions'):
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id'), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('metadata', sa.JSON(), nullable=True),
            *_timestamps(),
        )

    if not _has_table(conn, 'purchases'):
        op.create_table(
            'purchases',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('session_id', sa.String(length=255), nullable=False),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
            sa.Column('price_id', sa.String(length=255), nullable=True),
            sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
            sa.Column('tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('token_type', sa.String(length=32), nullable=False, server_default='subscription_token'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='completed'),
            sa.Column('type', sa.String(length=32), nullable=False, server_default='purchase'),
            sa.Column('customer_email', sa.String(length=255), nullable=True),
            sa.Column('referrer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
            sa.Column('tokens_awarded', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('session_id', name='uq_purchases_session_id'),
        )

    if not _has_table(conn, 'token_transactions'):
        op.create_table(
            'token_transactions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('bucket', sa.String(length=32), nullable=False),
            sa.Column('delta', sa.Integer(), nullable=False),
            sa.Column('balance_after', sa.Integer(), nullable=False),
            sa.Column('reason', sa.String(length=255), nullable=True),
            sa.Column(
                'purchase_id',
                sa.Integer(),
                sa.ForeignKey('purchases.id', ondelete='SET NULL'),
                nullable=True,
            ),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        )

    if not _has_table(conn, 'token_usage'):
        op.create_table(
            'token_usage',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('feature', sa.String(length=255), nullable=False, server_default='usage'),
            sa.Column('model', sa.String(length=100), nullable=True),
            sa.Column('analysis_type', sa.String(length=100), nullable=True),
            sa.Column('reason', sa.String(length=255), nullable=True),
            sa.Column('input_tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('output_tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('tokens_used', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('total_tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('token_type_used', sa.String(length=32), nullable=True),
            sa.Column('breakdown', sa.JSON(), nullable=True),
            sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        )

    if not _has_table(conn, 'referrals'):
        op.create_table(
            'referrals',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('referrer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('referred_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('referral_code', sa.String(length=64), nullable=False),
            sa.Column('referred_email', sa.String(length=255), nullable=True),
            sa.Column('is_converted', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('tokens_awarded', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('converted_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('referrer_id', 'referred_id', name='uq_referrals_referrer_referred'),
        )

    if not _has_table(conn, 'referral_tiers'):
        op.create_table(
            'referral_tiers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('min_referrals', sa.Integer(), nullable=False),
            sa.Column('max_referrals', sa.Integer(), nullable=True),
            sa.Column('referrer_tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('referee_tokens', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('badge', sa.String(length=100), nullable=True),
            sa.Column('subscription_reward', sa.String(length=100), nullable=True),
            sa.Column('subscription_months', sa.Integer(), nullable=True),
        )

    if not _has_table(conn, 'sales_milestone_tiers'):
        op.create_table(
            'sales_milestone_tiers',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('required_sales', sa.Integer(), nullable=False),
            sa.Column('badge', sa.String(length=100), nullable=True),
            sa.Column('subscription_reward', sa.String(length=100), nullable=True),
            sa.Column('subscription_months', sa.Integer(), nullable=True),
            sa.Column('cash_bonus', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
            sa.Column('has_physical_plaque', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('perks', sa.JSON(), nullable=True),
            sa.UniqueConstraint('required_sales', name='uq_sales_milestone_tiers_required_sales'),
        )

    if not _has_table(conn, 'user_badges'):
        op.create_table(
            'user_badges',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('badge_type', sa.String(length=32), nullable=False),
            sa.Column('badge_level', sa.String(length=100), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('awarded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('user_id', 'badge_type', name='uq_user_badges_user_type'),
        )

    if not _has_table(conn, 'milestone_awards'):
        op.create_table(
            'milestone_awards',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('program', sa.String(length=20), nullable=False),
            sa.Column('tier_id', sa.Integer(), nullable=False),
            sa.Column('tier_name', sa.String(length=100), nullable=True),
            sa.Column('count_at_award', sa.Integer(), nullable=False, server_default=sa.text('0')),
            sa.Column('awarded_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.UniqueConstraint('user_id', 'program', 'tier_id', name='uq_milestone_awards_user_program_tier'),
        )

    if not _has_table(conn, 'milestone_rewards'):
        op.create_table(
            'milestone_rewards',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column(
                'award_id',
                sa.Integer(),
                sa.ForeignKey('milestone_awards.id', ondelete='CASCADE'),
                nullable=False,
            ),
            sa.Column('program', sa.String(length=20), nullable=False),
            sa.Column('reward_type', sa.String(length=20), nullable=False),
            sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
            sa.Column('value', sa.JSON(), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        )

    if not _has_table(conn, 'affiliate_sales'):
        op.create_table(
            'affiliate_sales',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('affiliate_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
            sa.Column(
                'subscription_id',
                sa.Integer(),
                sa.ForeignKey('subscriptions.id', ondelete='SET NULL'),
                nullable=True,
            ),
            sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
            sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default=sa.text('0')),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        )

    for index_name, table_name, columns, unique in INDEXES:
        if not _has_index(conn, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def downgrade() -> None:
    conn = op.get_bind()

    for index_name, table_name, _columns, _unique in reversed(INDEXES):
        if _has_index(conn, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in (
        'affiliate_sales',
        'milestone_rewards',
        'milestone_awards',
        'user_badges',
        'sales_milestone_tiers',
        'referral_tiers',
        'referrals',
        'token_usage',
        'token_transactions',
        'purchases',
        'subscriptions',
        'plans',
        'users',
    ):
        if _has_table(conn, table_name):
            op.drop_table(table_name)
