"""
Inventory Service — query handlers (read side)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import reservations, stock


async def get_stock(session: AsyncSession, product_id: int) -> dict:
    result = await session.execute(
        select(stock.c.qty).where(stock.c.product_id == product_id)
    )
    qty = result.scalar_one_or_none()
    return {"productId": str(product_id), "qty": qty or 0}


async def get_reservation(session: AsyncSession, reservation_id: str) -> dict | None:
    result = await session.execute(
        select(reservations).where(reservations.c.reservation_id == reservation_id)
    )
    row = result.first()
    if not row:
        return None
    return {
        "reservationId": row.reservation_id,
        "productId": str(row.product_id),
        "qty": row.qty,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }
