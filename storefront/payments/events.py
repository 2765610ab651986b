"""
Payments Service — event definitions
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class PaymentCaptured(BaseModel):
    """A charge succeeded"""
    payment_id: str
    order_id: int | None
    amount: Decimal
    currency: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    """A charge was declined"""
    payment_id: str
    order_id: int | None
    amount: Decimal
    currency: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    """A captured payment was refunded"""
    payment_id: str
    amount: Decimal
    reason: str
    timestamp: datetime
