"""topup_failures: remember the last counted PaymentIntent

Revision ID: 0002_topup_failure_pi
Revises: 0001_credit_ledger
Create Date: 2026-10-18 14:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_topup_failure_pi'
down_revision = '0001_credit_ledger'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('topup_failures', sa.Column('last_payment_intent_id', sa.String(length=64), nullable=True))


def downgrade():
    op.drop_column('topup_failures', 'last_payment_intent_id')
