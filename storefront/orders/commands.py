"""
Order Service — command handlers (write side)

Commands change the order ledger; reads go through queries.py. Commands run
on behalf of a user load the OrderAggregate, let it check the business rule
(owner, current status) and then write the new status in a short
transaction of its own. The saga writes the statuses of an order it has
claimed directly (set_status).

Order status machine:

    created_unpaid ──pay──→ paying ──→ created_paid ──→ processing → ... → received
          │                   │
        cancel                └──→ failed ──pay again──→ paying
          ↓
        failed

Transitions that must not race (pay claim, cancel, receive) are conditional
UPDATEs on the current status: the UPDATE only matches while the row is still
in the expected status, so of two concurrent callers exactly one sees a row
count of 1 and the other gets a Conflict. Every status change is published
to `order_events` after the commit.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.common.errors import Conflict, Forbidden, NotFound
from storefront.common.events import publish

from .aggregate import (
    CREATED_UNPAID,
    DELIVERED_TO_PICKUP,
    FAILED,
    PAYABLE,
    PAYING,
    RECEIVED,
    OrderAggregate,
)
from .events import OrderCreated, OrderStatusChanged
from .tables import orders, products

CHANNEL = "order_events"

logger = logging.getLogger(__name__)


async def load_order(session: AsyncSession, order_id: int, lock: bool = False) -> OrderAggregate:
    stmt = select(orders).where(orders.c.id == order_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    row = result.first()
    if not row:
        raise NotFound("Not found")
    return OrderAggregate.from_row(row)


def _ensure_owner(agg: OrderAggregate, user_id: int) -> None:
    if agg.user_id != user_id:
        raise Forbidden("Forbidden")


async def _transition(
    session: AsyncSession,
    redis: aioredis.Redis,
    agg: OrderAggregate,
    expected: tuple[str, ...],
    new_status: str,
    conflict_message: str,
) -> OrderAggregate:
    """Compare-and-set the status; Conflict if someone else moved the order first."""
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(orders.c.id == agg.id, orders.c.status.in_(expected))
        .values(status=new_status, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise Conflict(conflict_message)
    await session.commit()

    previous, agg.status = agg.status, new_status
    logger.info("Order %s: %s -> %s", agg.id, previous, new_status)
    await publish(redis, CHANNEL, OrderStatusChanged(
        order_id=agg.id, from_status=previous, to_status=new_status, timestamp=now
    ))
    return agg


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    user_id: int,
    product_id: int,
    qty: int,
) -> OrderAggregate:
    """
    Create order command

    The order starts unpaid; payment is a separate, retryable step.
    """
    found = await session.execute(select(products.c.id).where(products.c.id == product_id))
    if found.scalar_one_or_none() is None:
        await session.rollback()
        raise NotFound("Product not found")

    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(orders).values(
            user_id=user_id,
            product_id=product_id,
            qty=qty,
            status=CREATED_UNPAID,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    order_id = result.inserted_primary_key[0]

    logger.info("Order %s created: user=%s product=%s qty=%s", order_id, user_id, product_id, qty)
    await publish(redis, CHANNEL, OrderCreated(
        order_id=order_id, user_id=user_id, product_id=product_id, qty=qty, timestamp=now
    ))
    return OrderAggregate(order_id, user_id, product_id, qty, CREATED_UNPAID)


async def claim_for_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    user_id: int,
) -> OrderAggregate:
    """
    Pay claim command (saga entry)

    created_unpaid / failed → paying, atomically. Only one of several
    concurrent pay calls on the same order gets past this point.
    """
    agg = await load_order(session, order_id)
    _ensure_owner(agg, user_id)
    if not agg.is_payable:
        await session.rollback()
        raise Conflict("Order not payable")
    return await _transition(session, redis, agg, PAYABLE, PAYING, "Order not payable")


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    user_id: int,
) -> OrderAggregate:
    """Cancel command: only an unpaid order can be cancelled; it becomes failed."""
    agg = await load_order(session, order_id)
    _ensure_owner(agg, user_id)
    agg.ensure_cancellable()
    return await _transition(session, redis, agg, (CREATED_UNPAID,), FAILED, "Cannot cancel")


async def mark_received(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    user_id: int,
) -> OrderAggregate:
    """The user picked the parcel up."""
    agg = await load_order(session, order_id)
    _ensure_owner(agg, user_id)
    agg.ensure_receivable()
    return await _transition(
        session, redis, agg, (DELIVERED_TO_PICKUP,), RECEIVED, "Not ready to receive"
    )


async def set_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    status: str,
    tracking_id: str | None = None,
) -> None:
    """Unconditional status write used by the saga on an order it has claimed."""
    now = datetime.now(timezone.utc)
    values = {"status": status, "updated_at": now}
    if tracking_id is not None:
        values["tracking_id"] = tracking_id
    await session.execute(update(orders).where(orders.c.id == order_id).values(**values))
    await session.commit()

    logger.info("Order %s -> %s (tracking=%s)", order_id, status, tracking_id)
    await publish(redis, CHANNEL, OrderStatusChanged(
        order_id=order_id,
        from_status=None,
        to_status=status,
        tracking_id=tracking_id,
        timestamp=now,
    ))


async def set_tracking_id(session: AsyncSession, order_id: int, tracking_id: str) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(tracking_id=tracking_id, updated_at=datetime.now(timezone.utc))
    )
    await session.commit()


async def apply_shipping_stage(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    stage: str,
) -> bool:
    """
    Status push from the shipment tracker

    Pushes may arrive late or twice; only a stage ahead of the current status
    is written. Returns whether the push changed anything.
    """
    agg = await load_order(session, order_id, lock=True)
    if not agg.accepts_stage(stage):
        await session.rollback()
        logger.info("Order %s: ignoring stage %s (status=%s)", order_id, stage, agg.status)
        return False

    now = datetime.now(timezone.utc)
    await session.execute(
        update(orders).where(orders.c.id == order_id).values(status=stage, updated_at=now)
    )
    await session.commit()

    logger.info("Order %s: %s -> %s (shipping)", order_id, agg.status, stage)
    await publish(redis, CHANNEL, OrderStatusChanged(
        order_id=order_id, from_status=agg.status, to_status=stage, timestamp=now
    ))
    return True


async def create_product(
    session: AsyncSession,
    seller_id: int,
    name: str,
    price: Decimal,
) -> dict:
    now = datetime.now(timezone.utc)
    price = price.quantize(Decimal("0.01"))
    result = await session.execute(
        insert(products).values(name=name, price=price, seller_id=seller_id, created_at=now)
    )
    await session.commit()
    return {
        "id": result.inserted_primary_key[0],
        "name": name,
        "price": float(price),
        "sellerId": seller_id,
    }
