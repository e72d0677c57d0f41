"""Initial schema: users, credits, chat, organizations, families, budgets and audit.

Revision ID: 001
Revises:
Create Date: 2026-03-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(12, 6)


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('display_name', sa.String(200), nullable=True),
        sa.Column('birthdate', sa.Date, nullable=True),
        sa.Column('is_admin', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('credits_balance', MONEY, nullable=False, server_default='0'),
        sa.Column('credits_allocated', MONEY, nullable=False, server_default='0'),
        sa.Column('credit_preference', sa.String(20), nullable=False, server_default='auto'),
        sa.Column('stripe_customer_id', sa.String(100), nullable=True, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Create credit_transactions table
    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('type', sa.String(30), nullable=False, index=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('balance_after', MONEY, nullable=False),
        sa.Column('stripe_payment_id', sa.String(255), nullable=True, unique=True, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )

    # Create ai_models table
    op.create_table(
        'ai_models',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, index=True),
        sa.Column('input_price', sa.Float, nullable=False),
        sa.Column('output_price', sa.Float, nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('category', sa.String(50), nullable=False, server_default='balanced'),
        sa.Column('is_recommended', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true(), index=True),
        sa.Column('max_tokens', sa.Integer, nullable=False, server_default='4096'),
        sa.Column('rate_limit_tier', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('capabilities', sa.JSON, nullable=True),
        sa.Column('system_role', sa.String(50), nullable=True),
        sa.Column('display_order', sa.Integer, nullable=False, server_default='100'),
        sa.Column('co2_per_million_tokens', sa.Float, nullable=False, server_default='0.5'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Create app_settings table
    app_settings = op.create_table(
        'app_settings',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.JSON, nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('updated_by', sa.String(100), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Create conversations and messages tables
    op.create_table(
        'conversations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('title', sa.String(200), nullable=False, server_default='Nouvelle conversation'),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('model', sa.String(100), nullable=True),
        sa.Column('tokens_input', sa.Integer, nullable=False, server_default='0'),
        sa.Column('tokens_output', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cost', MONEY, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )

    # Create api_usage table
    op.create_table(
        'api_usage',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('conversation_id', sa.String(36), sa.ForeignKey('conversations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('organization_id', sa.String(36), nullable=True, index=True),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('tokens_input', sa.Integer, nullable=False, server_default='0'),
        sa.Column('tokens_output', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cost_eur', MONEY, nullable=False, server_default='0'),
        sa.Column('provider_cost_eur', MONEY, nullable=False, server_default='0'),
        sa.Column('co2_grams', sa.Float, nullable=False, server_default='0'),
        sa.Column('credit_source', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )
    op.create_index('ix_api_usage_user_created', 'api_usage', ['user_id', 'created_at'])

    # Create organizations table
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(120), nullable=False, unique=True, index=True),
        sa.Column('type', sa.String(30), nullable=False, server_default='school'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('contact_email', sa.String(255), nullable=True),
        sa.Column('owner_id', sa.String(100), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('credit_balance', MONEY, nullable=False, server_default='0'),
        sa.Column('credit_allocated', MONEY, nullable=False, server_default='0'),
        sa.Column('settings', sa.JSON, nullable=True),
        sa.Column('max_family_members', sa.Integer, nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stripe_customer_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Classes come before members (members.class_id references them)
    op.create_table(
        'organization_classes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('settings', sa.JSON, nullable=True),
        sa.Column('created_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'organization_members',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('class_id', sa.String(36), sa.ForeignKey('organization_classes.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='student'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('credit_allocated', MONEY, nullable=False, server_default='0'),
        sa.Column('credit_used', MONEY, nullable=False, server_default='0'),
        sa.Column('can_manage_credits', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('supervision_mode', sa.String(20), nullable=True),
        sa.Column('birthdate', sa.Date, nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('organization_id', 'user_id', name='uq_org_member'),
    )

    op.create_table(
        'organization_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('member_id', sa.String(36), sa.ForeignKey('organization_members.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('user_id', sa.String(100), nullable=True),
        sa.Column('type', sa.String(30), nullable=False, index=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('balance_after', MONEY, nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('stripe_payment_id', sa.String(255), nullable=True, unique=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )

    op.create_table(
        'organization_invites',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False, index=True),
        sa.Column('role', sa.String(20), nullable=False, server_default='student'),
        sa.Column('token', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('credit_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('class_id', sa.String(36), nullable=True),
        sa.Column('birthdate', sa.Date, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('invited_by', sa.String(100), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('accepted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'credit_transfers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('direction', sa.String(20), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'class_analytics',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('class_id', sa.String(36), sa.ForeignKey('organization_classes.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('period_type', sa.String(20), nullable=False),
        sa.Column('period_start', sa.Date, nullable=False),
        sa.Column('metrics', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('class_id', 'period_type', 'period_start', name='uq_class_analytics_period'),
    )

    # Family tables
    op.create_table(
        'parental_controls',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('child_user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('supervision_mode', sa.String(20), nullable=False, server_default='guided'),
        sa.Column('daily_time_limit_minutes', sa.Integer, nullable=True),
        sa.Column('daily_credit_limit', MONEY, nullable=True),
        sa.Column('cumulative_credits', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('quiet_hours_start', sa.String(5), nullable=True),
        sa.Column('quiet_hours_end', sa.String(5), nullable=True),
        sa.Column('updated_by', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('organization_id', 'child_user_id', name='uq_parental_control_child'),
    )

    op.create_table(
        'credit_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('organization_id', sa.String(36), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('child_user_id', sa.String(100), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('reviewed_by', sa.String(100), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Rate limits, provider budgets and admin audit
    op.create_table(
        'rate_limit_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('model_tier', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_rate_limit_user_tier_created', 'rate_limit_events', ['user_id', 'model_tier', 'created_at'])

    op.create_table(
        'provider_budgets',
        sa.Column('provider', sa.String(50), primary_key=True),
        sa.Column('monthly_budget_eur', MONEY, nullable=False, server_default='0'),
        sa.Column('alert_threshold_50', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('alert_threshold_75', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('alert_threshold_90', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('alert_threshold_100', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('manual_balance', MONEY, nullable=True),
        sa.Column('manual_balance_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'provider_alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, index=True),
        sa.Column('threshold', sa.Integer, nullable=False),
        sa.Column('period', sa.String(7), nullable=False),
        sa.Column('spend_eur', MONEY, nullable=False),
        sa.Column('budget_eur', MONEY, nullable=False),
        sa.Column('acknowledged', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('acknowledged_by', sa.String(100), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('provider', 'period', 'threshold', name='uq_provider_alert_period'),
    )

    op.create_table(
        'admin_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('admin_id', sa.String(100), nullable=False, index=True),
        sa.Column('action', sa.String(50), nullable=False, index=True),
        sa.Column('target_user_id', sa.String(100), nullable=True, index=True),
        sa.Column('target_organization_id', sa.String(36), nullable=True),
        sa.Column('details', sa.JSON, nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )

    # Default settings
    op.bulk_insert(
        app_settings,
        [
            {'key': 'markup', 'value': {'percentage': 50}, 'description': 'Markup on provider prices'},
            {'key': 'free_credits', 'value': {'amount': 1.0}, 'description': 'Welcome credits for new users (EUR)'},
            {'key': 'min_balance_warning', 'value': {'amount': 0.5}, 'description': 'Low balance warning threshold (EUR)'},
            {'key': 'default_chat_model', 'value': {'model_id': 'claude-sonnet-4-20250514'}, 'description': None},
        ],
    )


def downgrade() -> None:
    op.drop_table('admin_audit_log')
    op.drop_table('provider_alerts')
    op.drop_table('provider_budgets')
    op.drop_index('ix_rate_limit_user_tier_created', table_name='rate_limit_events')
    op.drop_table('rate_limit_events')
    op.drop_table('credit_requests')
    op.drop_table('parental_controls')
    op.drop_table('class_analytics')
    op.drop_table('credit_transfers')
    op.drop_table('organization_invites')
    op.drop_table('organization_transactions')
    op.drop_table('organization_members')
    op.drop_table('organization_classes')
    op.drop_table('organizations')
    op.drop_index('ix_api_usage_user_created', table_name='api_usage')
    op.drop_table('api_usage')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('app_settings')
    op.drop_table('ai_models')
    op.drop_table('credit_transactions')
    op.drop_table('users')
