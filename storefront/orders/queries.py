"""
Order Service — query handlers (read side)
"""

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .tables import orders, products


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    return OrderAggregate.from_row(row).to_dict() if row else None


async def list_orders(session: AsyncSession, user_id: int) -> list[dict]:
    """The caller's orders, newest first."""
    result = await session.execute(
        select(orders).where(orders.c.user_id == user_id).order_by(orders.c.id.desc())
    )
    return [OrderAggregate.from_row(row).to_dict() for row in result.fetchall()]


def _product_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "price": float(row.price),
        "sellerId": row.seller_id,
    }


async def list_products(session: AsyncSession, limit: int = 100) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.id).limit(limit))
    return [_product_dict(row) for row in result.fetchall()]


async def get_product(session: AsyncSession, product_id: int) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.first()
    return _product_dict(row) if row else None


async def get_product_price(session: AsyncSession, product_id: int) -> Decimal | None:
    result = await session.execute(select(products.c.price).where(products.c.id == product_id))
    price = result.scalar_one_or_none()
    return Decimal(price) if price is not None else None
