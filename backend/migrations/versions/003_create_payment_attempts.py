"""Create payment_attempts table with the single-active-attempt index

Revision ID: 003
Revises: 002
Create Date: 2026-09-02 10:10:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect, text


# revision identifiers, used by Alembic.
revision: str = '003'
down_revision: Union[str, None] = '002'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_ATTEMPT_CONDITION = "status IN ('pending', 'processing')"


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'payment_attempts' not in existing_tables:
        op.create_table(
            'payment_attempts',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tenant_id', sa.String(length=64), nullable=False),
            sa.Column('order_id', sa.String(length=64), nullable=False),
            sa.Column('flow', sa.String(length=10), nullable=False, server_default='pdv'),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('terminal_id', sa.String(length=128), nullable=True),
            sa.Column('provider_transaction_id', sa.String(length=128), nullable=True),
            sa.Column('qr_data', sa.Text(), nullable=True),
            sa.Column('response_payload', sa.JSON(), nullable=True),
            sa.Column('error_payload', sa.JSON(), nullable=True),
            sa.Column('last_notification_id', sa.String(length=128), nullable=True),
            sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_payment_attempts_id', 'payment_attempts', ['id'])
        op.create_index('ix_payment_attempts_tenant_id', 'payment_attempts', ['tenant_id'])
        op.create_index('ix_payment_attempts_order_id', 'payment_attempts', ['order_id'])
        op.create_index('ix_payment_attempts_provider_transaction_id', 'payment_attempts', ['provider_transaction_id'])
        op.create_index(
            'ix_payment_attempts_tenant_order_created',
            'payment_attempts',
            ['tenant_id', 'order_id', 'created_at'],
        )

    existing_indexes = [idx['name'] for idx in inspect(conn).get_indexes('payment_attempts')]
    if 'uq_payment_attempts_active' not in existing_indexes:
        # Older deployments may already hold duplicate live attempts; keep the newest
        conn.execute(text(f"""
            UPDATE payment_attempts SET status = 'canceled'
            WHERE {ACTIVE_ATTEMPT_CONDITION}
              AND id NOT IN (
                SELECT MAX(id) FROM payment_attempts
                WHERE {ACTIVE_ATTEMPT_CONDITION}
                GROUP BY tenant_id, order_id
              )
        """))
        op.create_index(
            'uq_payment_attempts_active',
            'payment_attempts',
            ['tenant_id', 'order_id'],
            unique=True,
            postgresql_where=sa.text(ACTIVE_ATTEMPT_CONDITION),
            sqlite_where=sa.text(ACTIVE_ATTEMPT_CONDITION),
        )


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)

    if 'payment_attempts' in inspector.get_table_names():
        op.drop_index('uq_payment_attempts_active', table_name='payment_attempts')
        op.drop_index('ix_payment_attempts_tenant_order_created', table_name='payment_attempts')
        op.drop_index('ix_payment_attempts_provider_transaction_id', table_name='payment_attempts')
        op.drop_index('ix_payment_attempts_order_id', table_name='payment_attempts')
        op.drop_index('ix_payment_attempts_tenant_id', table_name='payment_attempts')
        op.drop_index('ix_payment_attempts_id', table_name='payment_attempts')
        op.drop_table('payment_attempts')
