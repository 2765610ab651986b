"""
Shipping Service — query handlers (read side)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import shipment_stages, shipments


async def track(session: AsyncSession, tracking_id: str) -> dict | None:
    """Shipment with its stage history in the order the stages were reached."""
    result = await session.execute(
        select(shipments.c.order_id, shipments.c.tracking_id, shipments.c.status)
        .where(shipments.c.tracking_id == tracking_id)
    )
    row = result.first()
    if not row:
        return None
    stages = await session.execute(
        select(shipment_stages.c.name, shipment_stages.c.at)
        .where(shipment_stages.c.tracking_id == tracking_id)
        .order_by(shipment_stages.c.id)
    )
    return {
        "orderId": row.order_id,
        "trackingId": row.tracking_id,
        "status": row.status,
        "stages": [
            {"name": s.name, "at": s.at.isoformat() if s.at else None}
            for s in stages.fetchall()
        ],
    }
