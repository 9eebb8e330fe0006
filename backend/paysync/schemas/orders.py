"""Pydantic schemas for orders"""
from datetime import datetime

from pydantic import BaseModel


class OrderCloseResponse(BaseModel):
    order_id: str
    total_cents: int
    closed_at: datetime
