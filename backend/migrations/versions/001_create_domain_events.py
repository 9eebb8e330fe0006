"""Create domain_events table

Revision ID: 001
Revises:
Create Date: 2026-09-02 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Check if table already exists (in case it was created by Base.metadata.create_all)
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'domain_events' not in existing_tables:
        op.create_table(
            'domain_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tenant_id', sa.String(length=64), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('result', sa.JSON(), nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_domain_events_id', 'domain_events', ['id'])
        op.create_index('ix_domain_events_tenant_id', 'domain_events', ['tenant_id'])
        op.create_index('ix_domain_events_event_type', 'domain_events', ['event_type'])
        op.create_index('ix_domain_events_status_created', 'domain_events', ['status', 'created_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)

    if 'domain_events' in inspector.get_table_names():
        op.drop_index('ix_domain_events_status_created', table_name='domain_events')
        op.drop_index('ix_domain_events_event_type', table_name='domain_events')
        op.drop_index('ix_domain_events_tenant_id', table_name='domain_events')
        op.drop_index('ix_domain_events_id', table_name='domain_events')
        op.drop_table('domain_events')
