"""Order routes used by the point of sale"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paysync.core.security import require_tenant
from paysync.db.session import get_db
from paysync.schemas.orders import OrderCloseResponse
from paysync.services.events.contracts import EventType
from paysync.services.events.dispatcher import dispatch

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("/{order_id}/close", response_model=OrderCloseResponse)
async def close_order(
    order_id: str,
    tenant_id: str = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Close an order so it can be collected"""
    return await dispatch(EventType.ORDER_CLOSED, {"tenant_id": tenant_id, "order_id": order_id}, db)
