"""Create platform_alerts and orders tables

Revision ID: 004
Revises: 003
Create Date: 2026-09-02 10:15:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '004'
down_revision: Union[str, None] = '003'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'platform_alerts' not in existing_tables:
        op.create_table(
            'platform_alerts',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tenant_id', sa.String(length=64), nullable=True),
            sa.Column('audience', sa.String(length=20), nullable=False, server_default='tenant'),
            sa.Column('severity', sa.String(length=20), nullable=False),
            sa.Column('kind', sa.String(length=100), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('message', sa.Text(), nullable=False),
            sa.Column('details', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_platform_alerts_id', 'platform_alerts', ['id'])
        op.create_index('ix_platform_alerts_tenant_id', 'platform_alerts', ['tenant_id'])

    if 'orders' not in existing_tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.String(length=64), nullable=False),
            sa.Column('tenant_id', sa.String(length=64), nullable=False),
            sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_orders_tenant_id', 'orders', ['tenant_id'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'orders' in existing_tables:
        op.drop_index('ix_orders_tenant_id', table_name='orders')
        op.drop_table('orders')
    if 'platform_alerts' in existing_tables:
        op.drop_index('ix_platform_alerts_tenant_id', table_name='platform_alerts')
        op.drop_index('ix_platform_alerts_id', table_name='platform_alerts')
        op.drop_table('platform_alerts')
