"""
Shipping Service — table definitions
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, func

metadata = MetaData()

shipments = Table(
    "shipments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, nullable=False, unique=True),
    Column("tracking_id", String(128), nullable=False, unique=True),
    Column("recipient", String(255), nullable=False, default="user"),
    Column("status", String(32), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

shipment_stages = Table(
    "shipment_stages",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("tracking_id", String(128), nullable=False, index=True),
    Column("name", String(32), nullable=False),
    Column("at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
