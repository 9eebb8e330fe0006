"""Order collaborator used by payment collection"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from paysync.core.exceptions import ConflictError
from paysync.models.order import Order
from paysync.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderTotal:
    amount_cents: int
    is_closed: bool


def get_order(tenant_id: str, order_id: str, db: Session) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id, Order.tenant_id == tenant_id).first()


def get_order_total(tenant_id: str, order_id: str, db: Session) -> OrderTotal:
    order = get_order(tenant_id, order_id, db)
    if not order:
        raise ConflictError(ConflictError.ORDER_NOT_FOUND, f"Order {order_id} not found")
    return OrderTotal(amount_cents=order.total_cents or 0, is_closed=order.closed_at is not None)


def close_order(tenant_id: str, order_id: str, db: Session) -> Order:
    """Mark an order closed. Closing twice keeps the original timestamp."""
    order = get_order(tenant_id, order_id, db)
    if not order:
        raise ConflictError(ConflictError.ORDER_NOT_FOUND, f"Order {order_id} not found")
    if order.closed_at is None:
        order.closed_at = utcnow()
        db.commit()
        db.refresh(order)
        logger.info(f"Closed order {order_id} for tenant {tenant_id} (total {order.total_cents} cents)")
    return order
