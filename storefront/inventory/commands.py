"""
Inventory Service — command handlers (write side)

reserve / commit / release form the inventory half of the order saga:
  reserve  : hold stock for a reservation id (stock is deducted immediately)
  commit   : make the hold permanent (stock untouched, reservation row removed)
  release  : compensation: return the held quantity to stock

The stock row is locked (SELECT ... FOR UPDATE) across check-and-decrement,
which is what keeps concurrent reservations from overselling.
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.common.errors import Conflict, InsufficientStock, NotFound
from storefront.common.events import publish

from .events import (
    ReservationCommitted,
    ReservationRejected,
    ReservationReleased,
    StockReserved,
    StockSet,
)
from .tables import reservations, stock

CHANNEL = "inventory_events"

logger = logging.getLogger(__name__)


async def _lock_stock_row(session: AsyncSession, product_id: int):
    result = await session.execute(
        select(stock.c.product_id, stock.c.qty)
        .where(stock.c.product_id == product_id)
        .with_for_update()
    )
    return result.first()


async def reserve(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
    product_id: int,
    qty: int,
) -> dict:
    """
    Reserve command

    1. Lock the stock row (a product without a row has nothing available)
    2. Reject with InsufficientStock if qty > available; nothing is written
    3. Decrement stock and insert the reservation in the same transaction
    """
    now = datetime.now(timezone.utc)

    row = await _lock_stock_row(session, product_id)
    available = row.qty if row else 0

    if available < qty:
        await session.rollback()
        logger.info(
            "Reservation %s rejected: product=%s requested=%s available=%s",
            reservation_id, product_id, qty, available,
        )
        await publish(redis, CHANNEL, ReservationRejected(
            reservation_id=reservation_id,
            product_id=product_id,
            qty_requested=qty,
            qty_available=available,
            timestamp=now,
        ))
        raise InsufficientStock("Insufficient stock")

    await session.execute(
        update(stock)
        .where(stock.c.product_id == product_id)
        .values(qty=stock.c.qty - qty, updated_at=now)
    )
    try:
        await session.execute(
            insert(reservations).values(
                reservation_id=reservation_id,
                product_id=product_id,
                qty=qty,
                created_at=now,
            )
        )
    except IntegrityError:
        # the decrement above is discarded together with the duplicate row
        await session.rollback()
        raise Conflict("Reservation already exists")
    await session.commit()

    remaining = available - qty
    logger.info(
        "Reserved %s x product=%s for %s (remaining=%s)",
        qty, product_id, reservation_id, remaining,
    )
    await publish(redis, CHANNEL, StockReserved(
        reservation_id=reservation_id,
        product_id=product_id,
        qty=qty,
        remaining=remaining,
        timestamp=now,
    ))
    return {"reserved": True, "reservationId": reservation_id}


async def commit(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
) -> dict:
    """
    Commit command

    Stock was already deducted by reserve, so only the reservation row goes.
    A missing row is reported, never ignored: committing twice (or committing a
    released reservation) means the caller has a bug.
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        delete(reservations).where(reservations.c.reservation_id == reservation_id)
    )
    if not result.rowcount:
        await session.rollback()
        raise NotFound("Reservation not found")
    await session.commit()

    logger.info("Committed reservation %s", reservation_id)
    await publish(redis, CHANNEL, ReservationCommitted(reservation_id=reservation_id, timestamp=now))
    return {"committed": True}


async def release(
    session: AsyncSession,
    redis: aioredis.Redis,
    reservation_id: str,
) -> dict:
    """
    Release command (saga compensation)

    Deletes the reservation and adds its quantity back to stock under the
    stock row lock.
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(reservations.c.id, reservations.c.product_id, reservations.c.qty)
        .where(reservations.c.reservation_id == reservation_id)
        .with_for_update()
    )
    held = result.first()
    if not held:
        await session.rollback()
        raise NotFound("Reservation not found")

    row = await _lock_stock_row(session, held.product_id)
    await session.execute(delete(reservations).where(reservations.c.id == held.id))
    await session.execute(
        update(stock)
        .where(stock.c.product_id == held.product_id)
        .values(qty=stock.c.qty + held.qty, updated_at=now)
    )
    await session.commit()

    remaining = (row.qty if row else 0) + held.qty
    logger.info(
        "Released reservation %s: %s x product=%s back to stock (remaining=%s)",
        reservation_id, held.qty, held.product_id, remaining,
    )
    await publish(redis, CHANNEL, ReservationReleased(
        reservation_id=reservation_id,
        product_id=held.product_id,
        qty=held.qty,
        remaining=remaining,
        timestamp=now,
    ))
    return {"released": True}


async def set_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    product_id: int,
    qty: int,
) -> dict:
    """Administrative absolute set of a product's available stock."""
    now = datetime.now(timezone.utc)

    row = await _lock_stock_row(session, product_id)
    try:
        if row:
            await session.execute(
                update(stock)
                .where(stock.c.product_id == product_id)
                .values(qty=qty, updated_at=now)
            )
        else:
            await session.execute(
                insert(stock).values(product_id=product_id, qty=qty, updated_at=now)
            )
        await session.commit()
    except IntegrityError:
        # a concurrent first write created the row between lock and insert
        await session.rollback()
        raise Conflict("Stock row changed concurrently, retry")

    logger.info("Stock for product=%s set to %s", product_id, qty)
    await publish(redis, CHANNEL, StockSet(product_id=product_id, qty=qty, timestamp=now))
    return {"productId": str(product_id), "qty": qty}
