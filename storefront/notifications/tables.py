"""
Notifications Service — table definitions
"""

from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, func

metadata = MetaData()

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("type", String(64), nullable=False),
    Column("recipient", String(255), nullable=False, index=True),
    Column("payload", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
