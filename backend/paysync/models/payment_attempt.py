"""PaymentAttempt model"""
from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, Index, text
from datetime import datetime, timezone
from paysync.models.base import Base

ACTIVE_ATTEMPT_CONDITION = "status IN ('pending', 'processing')"


class PaymentAttempt(Base):
    """One payment collection try for one order"""
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), nullable=False, index=True)
    flow = Column(String(10), nullable=False, default="pdv")  # qr, pdv
    status = Column(String(20), nullable=False, default="pending")
    amount_cents = Column(Integer, nullable=False)
    terminal_id = Column(String(128), nullable=True)
    provider_transaction_id = Column(String(128), nullable=True, index=True)
    qr_data = Column(Text, nullable=True)
    response_payload = Column(JSON, nullable=True)
    error_payload = Column(JSON, nullable=True)
    last_notification_id = Column(String(128), nullable=True)
    last_processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        # Source of truth for the single-active-attempt rule
        Index(
            'uq_payment_attempts_active',
            'tenant_id', 'order_id',
            unique=True,
            postgresql_where=text(ACTIVE_ATTEMPT_CONDITION),
            sqlite_where=text(ACTIVE_ATTEMPT_CONDITION),
        ),
        Index('ix_payment_attempts_tenant_order_created', 'tenant_id', 'order_id', 'created_at'),
    )
