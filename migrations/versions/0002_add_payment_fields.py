"""add_payment_metadata_and_gateway_settings

Revision ID: 0002
Revises: 0001_init
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002'
down_revision = '0001_init'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('orders', sa.Column('payment_provider', sa.String(30), nullable=False, server_default='paypal'))
    op.add_column('orders', sa.Column('external_payment_id', sa.String(100), nullable=True))
    op.add_column('orders', sa.Column('capture_id', sa.String(100), nullable=True))
    op.add_column('orders', sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('orders', sa.Column('captured_amount', sa.JSON, nullable=True))
    op.add_column('orders', sa.Column('settlement_amount', sa.Numeric(12, 2), nullable=True))
    op.add_column('orders', sa.Column('settlement_currency', sa.String(3), nullable=True))
    op.add_column('orders', sa.Column('exchange_rate', sa.Numeric(18, 8), nullable=True))
    op.add_column('orders', sa.Column('webhook_processed', sa.Boolean, nullable=False, server_default=sa.false()))
    op.add_column('orders', sa.Column('webhook_processed_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('orders', sa.Column('failure_code', sa.String(50), nullable=True))
    op.add_column('orders', sa.Column('failure_reason', sa.String(500), nullable=True))

    # Point lookups by provider id from capture and webhook handlers
    op.create_index('ix_orders_external_payment_id', 'orders', ['external_payment_id'])
    op.create_unique_constraint(
        'uq_orders_provider_external_id', 'orders', ['payment_provider', 'external_payment_id']
    )

    op.create_table(
        'payment_gateway_settings',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('provider', sa.String(30), nullable=False, unique=True),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('environment', sa.String(10), nullable=False, server_default='sandbox'),
        sa.Column('client_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('client_secret', sa.String(255), nullable=False, server_default=''),
        sa.Column('webhook_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('payment_gateway_settings')
    op.drop_constraint('uq_orders_provider_external_id', 'orders', type_='unique')
    op.drop_index('ix_orders_external_payment_id')
    for column in (
        'failure_reason', 'failure_code', 'webhook_processed_at', 'webhook_processed',
        'exchange_rate', 'settlement_currency', 'settlement_amount', 'captured_amount',
        'captured_at', 'capture_id', 'external_payment_id', 'payment_provider',
    ):
        op.drop_column('orders', column)
