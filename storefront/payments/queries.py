"""
Payments Service — query handlers (read side)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import payments


def _to_dict(row) -> dict:
    return {
        "paymentId": row.payment_id,
        "orderId": row.order_id,
        "amount": float(row.amount),
        "currency": row.currency,
        "status": row.status,
        "refundedAmount": float(row.refunded_amount) if row.refunded_amount is not None else None,
        "refundReason": row.refund_reason,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


async def get_payment(session: AsyncSession, payment_id: str) -> dict | None:
    result = await session.execute(
        select(payments).where(payments.c.payment_id == payment_id)
    )
    row = result.first()
    return _to_dict(row) if row else None


async def list_by_order(session: AsyncSession, order_id: int) -> list[dict]:
    result = await session.execute(
        select(payments)
        .where(payments.c.order_id == order_id)
        .order_by(payments.c.id.desc())
    )
    return [_to_dict(row) for row in result.fetchall()]
