"""add_refund_fields

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003'
down_revision = '0002'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('orders', sa.Column('refund_id', sa.String(100), nullable=True))
    op.add_column('orders', sa.Column('refund_status', sa.String(30), nullable=True))
    op.add_column('orders', sa.Column('refunded_amount', sa.JSON, nullable=True))
    op.add_column('orders', sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column('orders', 'refunded_at')
    op.drop_column('orders', 'refunded_amount')
    op.drop_column('orders', 'refund_status')
    op.drop_column('orders', 'refund_id')
