"""
Shipping Service — event definitions
"""

from datetime import datetime

from pydantic import BaseModel


class ShipmentCreated(BaseModel):
    """A shipment was opened for a paid order"""
    order_id: int
    tracking_id: str
    timestamp: datetime


class ShipmentAdvanced(BaseModel):
    """A shipment reached its next stage"""
    order_id: int
    tracking_id: str
    stage: str
    timestamp: datetime
