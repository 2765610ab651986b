"""
Order Service — event definitions

Past-tense facts published on `order_events`.
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """An unpaid order was placed"""
    order_id: int
    user_id: int
    product_id: int
    qty: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """An order moved to a new status (saga step, cancellation, shipping push, receipt)"""
    order_id: int
    from_status: str | None
    to_status: str
    tracking_id: str | None = None
    timestamp: datetime
