"""
Notifications Service — query handlers
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .tables import notifications


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "type": row.type,
        "to": row.recipient,
        "payload": row.payload,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


async def latest(session: AsyncSession, limit: int = 100) -> list[dict]:
    result = await session.execute(
        select(notifications).order_by(notifications.c.id.desc()).limit(limit)
    )
    return [_to_dict(row) for row in result.fetchall()]


async def for_recipient(session: AsyncSession, recipient: str, limit: int = 50) -> list[dict]:
    result = await session.execute(
        select(notifications)
        .where(notifications.c.recipient == recipient)
        .order_by(notifications.c.id.desc())
        .limit(limit)
    )
    return [_to_dict(row) for row in result.fetchall()]
