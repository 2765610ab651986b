"""
Notifications Service — command handlers

Delivery (mail, SMS, push) is outside this system: a notification is
recorded and logged, which is what the other services and the UI rely on.

Senders never wait on this service for their own outcome. The order saga and
the shipment tracker go through NotificationClient, which logs and drops a
failed send, so a notification can be missing but never blocks an order.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.common.errors import NotFound

from .tables import notifications

logger = logging.getLogger(__name__)


async def record(session: AsyncSession, type_: str, to: str, payload: Any) -> dict:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(notifications).values(
            type=type_, recipient=to, payload=payload or {}, created_at=now
        )
    )
    await session.commit()
    logger.info("sent notification type=%s to=%s payload=%s", type_, to, payload)
    return {"sent": True, "id": result.inserted_primary_key[0]}


async def remove(session: AsyncSession, notification_id: int) -> dict:
    result = await session.execute(
        delete(notifications).where(notifications.c.id == notification_id)
    )
    if not result.rowcount:
        await session.rollback()
        raise NotFound("Notification not found")
    await session.commit()
    return {"deleted": True, "id": notification_id}
