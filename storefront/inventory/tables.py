"""
Inventory Service — table definitions

stock.qty is the quantity still available: a reservation subtracts from it
when created, so outstanding reservations are already deducted.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, MetaData, String, Table, func

metadata = MetaData()

stock = Table(
    "stock",
    metadata,
    Column("product_id", Integer, primary_key=True, autoincrement=False),
    Column("qty", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("qty >= 0", name="stock_qty_non_negative"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("reservation_id", String(128), nullable=False, unique=True),
    Column("product_id", Integer, nullable=False, index=True),
    Column("qty", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
