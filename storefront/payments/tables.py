"""
Payments Service — table definitions
"""

from sqlalchemy import Column, DateTime, Integer, MetaData, Numeric, String, Table, func

metadata = MetaData()

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("payment_id", String(128), nullable=False, unique=True),
    Column("order_id", Integer, nullable=True, index=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(8), nullable=False),
    Column("status", String(16), nullable=False),
    Column("refunded_amount", Numeric(12, 2), nullable=True),
    Column("refund_reason", String(255), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
