"""Create provider_credentials table with one live credential per tenant

Revision ID: 002
Revises: 001
Create Date: 2026-09-02 10:05:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_CREDENTIAL_CONDITION = "status = 'active' AND deleted_at IS NULL"


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'provider_credentials' not in existing_tables:
        op.create_table(
            'provider_credentials',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('tenant_id', sa.String(length=64), nullable=False),
            sa.Column('provider', sa.String(length=50), nullable=False, server_default='mercadopago'),
            sa.Column('access_token', sa.Text(), nullable=False),
            sa.Column('refresh_token', sa.Text(), nullable=True),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('app_id', sa.String(length=64), nullable=True),
            sa.Column('provider_user_id', sa.String(length=64), nullable=True),
            sa.Column('contact_email', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('refreshed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_provider_credentials_id', 'provider_credentials', ['id'])
        op.create_index('ix_provider_credentials_tenant_id', 'provider_credentials', ['tenant_id'])
        op.create_index('ix_provider_credentials_provider_user_id', 'provider_credentials', ['provider_user_id'])
        op.create_index('ix_provider_credentials_contact_email', 'provider_credentials', ['contact_email'])

    existing_indexes = [idx['name'] for idx in inspect(conn).get_indexes('provider_credentials')]
    if 'uq_provider_credentials_active' not in existing_indexes:
        op.create_index(
            'uq_provider_credentials_active',
            'provider_credentials',
            ['tenant_id'],
            unique=True,
            postgresql_where=sa.text(ACTIVE_CREDENTIAL_CONDITION),
            sqlite_where=sa.text(ACTIVE_CREDENTIAL_CONDITION),
        )


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)

    if 'provider_credentials' in inspector.get_table_names():
        op.drop_index('uq_provider_credentials_active', table_name='provider_credentials')
        op.drop_index('ix_provider_credentials_contact_email', table_name='provider_credentials')
        op.drop_index('ix_provider_credentials_provider_user_id', table_name='provider_credentials')
        op.drop_index('ix_provider_credentials_tenant_id', table_name='provider_credentials')
        op.drop_index('ix_provider_credentials_id', table_name='provider_credentials')
        op.drop_table('provider_credentials')
