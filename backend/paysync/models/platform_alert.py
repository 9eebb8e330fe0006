"""PlatformAlert model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime
from datetime import datetime, timezone
from paysync.models.base import Base


class PlatformAlert(Base):
    """Tenant- or operator-visible notification about a payment or integration outcome"""
    __tablename__ = "platform_alerts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    audience = Column(String(20), nullable=False, default="tenant")  # tenant, admin
    severity = Column(String(20), nullable=False)  # info, warning, critical
    kind = Column(String(100), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
