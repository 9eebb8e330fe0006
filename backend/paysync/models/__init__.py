"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from paysync.models.base import Base
from paysync.models.domain_event import DomainEvent
from paysync.models.provider_credential import ProviderCredential
from paysync.models.payment_attempt import PaymentAttempt
from paysync.models.platform_alert import PlatformAlert
from paysync.models.order import Order

# Export all for convenience
__all__ = [
    "Base", "DomainEvent", "ProviderCredential", "PaymentAttempt",
    "PlatformAlert", "Order"
]
