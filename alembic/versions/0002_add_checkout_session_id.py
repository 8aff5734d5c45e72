"""Record the Stripe checkout session on subscription events

Revision ID: 0002_checkout_session
Revises: 0001_initial
Create Date: 2026-10-17 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_checkout_session'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('subscription_events', sa.Column('stripe_checkout_session_id', sa.String(), nullable=True))
    op.create_index(
        op.f('ix_subscription_events_stripe_checkout_session_id'),
        'subscription_events',
        ['stripe_checkout_session_id'],
        unique=False,
    )


def downgrade():
    op.drop_index(op.f('ix_subscription_events_stripe_checkout_session_id'), table_name='subscription_events')
    op.drop_column('subscription_events', 'stripe_checkout_session_id')
