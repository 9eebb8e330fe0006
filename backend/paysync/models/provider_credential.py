"""ProviderCredential model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Index, text
from datetime import datetime, timezone
from paysync.models.base import Base

ACTIVE_CREDENTIAL_CONDITION = "status = 'active' AND deleted_at IS NULL"


class ProviderCredential(Base):
    """Payment provider OAuth credentials per tenant (tokens encrypted)"""
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="mercadopago")
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text, nullable=True)  # Encrypted
    expires_at = Column(DateTime(timezone=True), nullable=True)
    app_id = Column(String(64), nullable=True)
    provider_user_id = Column(String(64), nullable=True, index=True)
    contact_email = Column(String(255), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="active")  # active, inactive, error
    error_message = Column(Text, nullable=True)
    refreshed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    # At most one live credential per tenant
    __table_args__ = (
        Index(
            'uq_provider_credentials_active',
            'tenant_id',
            unique=True,
            postgresql_where=text(ACTIVE_CREDENTIAL_CONDITION),
            sqlite_where=text(ACTIVE_CREDENTIAL_CONDITION),
        ),
    )
