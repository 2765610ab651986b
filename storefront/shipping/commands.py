"""
Shipping Service — command handlers (write side)

fulfill opens a shipment at `processing` and hands back its tracking id;
advance walks the stage machine one step at a time:

    processing → collected → in_transit → delivered_to_pickup

An order has at most one shipment. A second fulfill for the same order
answers with the tracking id already issued, so the order saga and its
outbox can repeat the call safely.

The stage transition is committed first. Pushing the new status to the
Order Ledger and notifying the user happen afterwards and may fail
independently; the ledger ignores late or repeated pushes, so the two sides
converge (eventual consistency).
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.common.errors import NotFound
from storefront.common.events import publish

from .aggregate import PROCESSING, ShipmentAggregate
from .clients import StageCallbacks
from .events import ShipmentAdvanced, ShipmentCreated
from .tables import shipment_stages, shipments

CHANNEL = "shipping_events"

logger = logging.getLogger(__name__)


@dataclass
class StageChange:
    order_id: int
    tracking_id: str
    recipient: str
    status: str
    done: bool
    advanced: bool


async def _tracking_id_for(session: AsyncSession, order_id: int) -> str | None:
    result = await session.execute(
        select(shipments.c.tracking_id).where(shipments.c.order_id == order_id)
    )
    return result.scalar_one_or_none()


async def fulfill(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    recipient: str,
) -> dict:
    """
    Fulfil command

    One shipment per order: calling it again for the same order returns the
    existing tracking id, so a retried fulfil never opens a second shipment.
    """
    existing = await _tracking_id_for(session, order_id)
    if existing:
        await session.rollback()
        return {"trackingId": existing}

    now = datetime.now(timezone.utc)
    tracking_id = f"TRK-{order_id}-{int(time.time() * 1000)}"
    try:
        await session.execute(
            insert(shipments).values(
                order_id=order_id,
                tracking_id=tracking_id,
                recipient=recipient,
                status=PROCESSING,
                created_at=now,
            )
        )
        await session.execute(
            insert(shipment_stages).values(tracking_id=tracking_id, name=PROCESSING, at=now)
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await _tracking_id_for(session, order_id)
        await session.rollback()
        if existing is None:
            raise
        return {"trackingId": existing}

    logger.info("Shipment %s opened for order=%s", tracking_id, order_id)
    await publish(redis, CHANNEL, ShipmentCreated(
        order_id=order_id, tracking_id=tracking_id, timestamp=now
    ))
    return {"trackingId": tracking_id}


async def advance(
    session: AsyncSession,
    redis: aioredis.Redis,
    tracking_id: str,
) -> StageChange:
    """
    Advance command

    The shipment row is locked so concurrent advances cannot append the same
    stage twice. At the terminal stage nothing is written.
    """
    result = await session.execute(
        select(shipments.c.order_id, shipments.c.tracking_id, shipments.c.recipient, shipments.c.status)
        .where(shipments.c.tracking_id == tracking_id)
        .with_for_update()
    )
    row = result.first()
    if not row:
        await session.rollback()
        raise NotFound("Shipment not found")

    agg = ShipmentAggregate.from_row(row)
    stage = agg.advance()
    if stage is None:
        await session.rollback()
        return StageChange(row.order_id, tracking_id, row.recipient, agg.status, done=True, advanced=False)

    now = datetime.now(timezone.utc)
    await session.execute(
        update(shipments).where(shipments.c.tracking_id == tracking_id).values(status=stage)
    )
    await session.execute(
        insert(shipment_stages).values(tracking_id=tracking_id, name=stage, at=now)
    )
    await session.commit()

    logger.info("Shipment %s advanced to %s", tracking_id, stage)
    await publish(redis, CHANNEL, ShipmentAdvanced(
        order_id=row.order_id, tracking_id=tracking_id, stage=stage, timestamp=now
    ))
    return StageChange(row.order_id, tracking_id, row.recipient, stage, done=agg.is_terminal, advanced=True)


async def propagate_stage(callbacks: StageCallbacks, change: StageChange) -> None:
    """Push the new stage to the Order Ledger and notify; failures are only logged."""
    try:
        await callbacks.orders.push_status(change.order_id, change.status)
    except httpx.HTTPError as e:
        logger.warning(
            "Order %s status push (%s) failed: %s", change.order_id, change.status, e
        )
    await callbacks.notifier.send(
        f"shipment_{change.status}",
        change.recipient,
        {"orderId": change.order_id, "trackingId": change.tracking_id},
    )


def quote(order_id: str) -> dict:
    """Placeholder carrier rate: 5 plus the last digit of the order id."""
    digits = re.sub(r"\D", "", order_id)
    return {"price": 5 + int(digits[-1:] or "0")}
