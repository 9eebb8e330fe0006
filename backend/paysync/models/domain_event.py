"""DomainEvent model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from paysync.models.base import Base


class DomainEvent(Base):
    """Audit log of every dispatched business event and its outcome"""
    __tablename__ = "domain_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending, processed, failed
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('ix_domain_events_status_created', 'status', 'created_at'),
    )
