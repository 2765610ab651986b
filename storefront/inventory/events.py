"""
Inventory Service — event definitions

Facts published on the `inventory_events` channel after each commit.
"""

from datetime import datetime

from pydantic import BaseModel


class StockReserved(BaseModel):
    """Stock was put on hold for a reservation"""
    reservation_id: str
    product_id: int
    qty: int
    remaining: int
    timestamp: datetime


class ReservationRejected(BaseModel):
    """A reservation was refused (insufficient stock)"""
    reservation_id: str
    product_id: int
    qty_requested: int
    qty_available: int
    timestamp: datetime


class ReservationCommitted(BaseModel):
    """A reservation became a permanent deduction"""
    reservation_id: str
    timestamp: datetime


class ReservationReleased(BaseModel):
    """A reservation was cancelled and its quantity returned (compensation)"""
    reservation_id: str
    product_id: int
    qty: int
    remaining: int
    timestamp: datetime


class StockSet(BaseModel):
    """Stock for a product was set administratively"""
    product_id: int
    qty: int
    timestamp: datetime
