"""
Order Service — compensation outbox

When a compensation (release, refund) or a post-payment step (commit,
fulfill) fails on its first attempt inside the saga, it is written here
instead of being dropped. A background worker retries pending rows.

Row lifecycle:
    pending → done
        ↓
      (attempts += 1 on each failure)
        ↓
      dead   (attempts reached the limit; needs a reconciliation job)

Every action is safe to repeat: a 404 from release/commit or a 404/409 from
refund means the effect is already in place.

A refund row also marks its payment id as spent for the order: a later pay
reuses the same payment ids, and an id queued for refund must not count as
the capture that pays for the order, whether or not the refund has run yet.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common.errors import Conflict, NotFound, ServiceError

from . import commands
from .clients import SagaGateways
from .tables import compensation_outbox

RELEASE = "release"
COMMIT = "commit"
REFUND = "refund"
FULFILL = "fulfill"

PENDING = "pending"
DONE = "done"
DEAD = "dead"

logger = logging.getLogger(__name__)


async def enqueue(session: AsyncSession, order_id: int, action: str, payload: dict) -> int:
    now = datetime.now(timezone.utc)
    result = await session.execute(
        insert(compensation_outbox).values(
            order_id=order_id,
            action=action,
            payload=payload,
            status=PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    entry_id = result.inserted_primary_key[0]
    logger.warning("Order %s: queued %s %s (outbox #%s)", order_id, action, payload, entry_id)
    return entry_id


async def list_entries(session: AsyncSession, status: str | None = None) -> list[dict]:
    stmt = select(compensation_outbox).order_by(compensation_outbox.c.id)
    if status:
        stmt = stmt.where(compensation_outbox.c.status == status)
    result = await session.execute(stmt)
    return [
        {
            "id": row.id,
            "orderId": row.order_id,
            "action": row.action,
            "payload": row.payload,
            "status": row.status,
            "attempts": row.attempts,
            "lastError": row.last_error,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
            "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
        }
        for row in result.fetchall()
    ]


async def refund_queued_payment_ids(session: AsyncSession, order_id: int) -> set[str]:
    """Payment ids of `order_id` that a refund row exists for, whatever its status."""
    result = await session.execute(
        select(compensation_outbox.c.payload).where(
            compensation_outbox.c.order_id == order_id,
            compensation_outbox.c.action == REFUND,
        )
    )
    return {payload["paymentId"] for payload in result.scalars()}


async def _apply(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: SagaGateways,
    order_id: int,
    action: str,
    payload: dict,
) -> None:
    if action == RELEASE:
        try:
            await gateways.inventory.release(payload["reservationId"])
        except NotFound:
            pass
    elif action == COMMIT:
        try:
            await gateways.inventory.commit(payload["reservationId"])
        except NotFound:
            pass
    elif action == REFUND:
        try:
            await gateways.payments.refund(payload["paymentId"], payload.get("reason", "Saga compensation"))
        except (NotFound, Conflict):
            pass
    elif action == FULFILL:
        tracking_id = await gateways.shipping.fulfill(order_id, payload.get("recipient", "user"))
        async with session_factory() as session:
            await commands.set_tracking_id(session, order_id, tracking_id)
    else:
        raise ValueError(f"Unknown outbox action: {action}")


async def _mark(
    session_factory: async_sessionmaker[AsyncSession],
    entry_id: int,
    **values,
) -> None:
    async with session_factory() as session:
        await session.execute(
            update(compensation_outbox)
            .where(compensation_outbox.c.id == entry_id)
            .values(updated_at=datetime.now(timezone.utc), **values)
        )
        await session.commit()


async def drain(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: SagaGateways,
    max_attempts: int = 10,
    batch_size: int = 50,
) -> int:
    """
    Retry every pending row once. Returns how many rows completed.

    Rows are read in one short transaction and each outcome is written in its
    own, so no transaction stays open across a call to another service.
    """
    async with session_factory() as session:
        result = await session.execute(
            select(compensation_outbox)
            .where(compensation_outbox.c.status == PENDING)
            .order_by(compensation_outbox.c.id)
            .limit(batch_size)
        )
        entries = result.fetchall()

    completed = 0
    for entry in entries:
        try:
            await _apply(session_factory, gateways, entry.order_id, entry.action, entry.payload)
        except ServiceError as e:
            attempts = entry.attempts + 1
            status = DEAD if attempts >= max_attempts else PENDING
            logger.warning(
                "Outbox #%s %s for order %s failed (attempt %s/%s): %s",
                entry.id, entry.action, entry.order_id, attempts, max_attempts, e.message,
            )
            await _mark(session_factory, entry.id, attempts=attempts, last_error=e.message, status=status)
            continue
        await _mark(session_factory, entry.id, attempts=entry.attempts + 1, status=DONE, last_error=None)
        logger.info("Outbox #%s %s for order %s done", entry.id, entry.action, entry.order_id)
        completed += 1
    return completed


async def run_worker(
    session_factory: async_sessionmaker[AsyncSession],
    get_gateways: Callable[[], SagaGateways],
    shutdown_event: asyncio.Event,
    poll_seconds: float,
    max_attempts: int,
) -> None:
    """Drain the outbox every `poll_seconds` until shutdown_event is set."""
    logger.info("Compensation outbox worker started")
    while not shutdown_event.is_set():
        try:
            await drain(session_factory, get_gateways(), max_attempts)
        except Exception:
            logger.exception("Outbox drain failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Compensation outbox worker stopped")
