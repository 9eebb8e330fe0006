"""Order model (only the fields payment collection needs)"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from paysync.models.base import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    total_cents = Column(Integer, nullable=False, default=0)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
