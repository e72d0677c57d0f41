"""Add family subscription tracking and class join links.

Revision ID: 002
Revises: 001
Create Date: 2026-03-10

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Stripe subscription of family organizations
    op.add_column('organizations', sa.Column('stripe_subscription_id', sa.String(100), nullable=True))
    op.add_column(
        'organizations',
        sa.Column('subscription_cancel_at_period_end', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.add_column(
        'organizations',
        sa.Column('subscription_current_period_end', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('idx_organizations_stripe_subscription', 'organizations', ['stripe_subscription_id'], unique=True)

    # Shareable join link of a class
    op.add_column('organization_classes', sa.Column('join_token', sa.String(64), nullable=True))
    op.create_index('idx_organization_classes_join_token', 'organization_classes', ['join_token'], unique=True)


def downgrade() -> None:
    op.drop_index('idx_organization_classes_join_token', 'organization_classes')
    op.drop_column('organization_classes', 'join_token')

    op.drop_index('idx_organizations_stripe_subscription', 'organizations')
    op.drop_column('organizations', 'subscription_current_period_end')
    op.drop_column('organizations', 'subscription_cancel_at_period_end')
    op.drop_column('organizations', 'stripe_subscription_id')
