"""
Payments Service — command handlers (write side)

There is no real gateway behind charge: the outcome is a pure function of the
payment id (last digit even → captured, odd → failed). The order saga retries
with a new payment id per attempt, so with ids p-{order}-1, p-{order}-2 the
first attempt is declined and the second captured.

A payment record only ever moves once:

    captured → refunded

failed is final from the start. Because the saga reuses the same ids when an
order is paid again, a replayed charge has to report what is stored now,
not what the id would produce on a fresh charge.
"""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.common.errors import Conflict, NotFound, ValidationFailed
from storefront.common.events import publish

from .events import PaymentCaptured, PaymentFailed, PaymentRefunded
from .tables import payments

CHANNEL = "payment_events"
CAPTURED = "captured"
FAILED = "failed"
REFUNDED = "refunded"

CENTS = Decimal("0.01")

logger = logging.getLogger(__name__)


def charge_outcome(payment_id: str) -> str:
    """Last digit of the digits in payment_id; no digits counts as 0."""
    digits = re.sub(r"\D", "", payment_id)
    last = int(digits[-1:] or "0")
    return CAPTURED if last % 2 == 0 else FAILED


async def charge(
    session: AsyncSession,
    redis: aioredis.Redis,
    payment_id: str,
    amount: Decimal,
    currency: str,
    order_id: int | None,
) -> dict:
    """
    Charge command

    The record is persisted whatever the outcome. Replaying an existing
    payment id writes nothing and answers with the status stored for it, which
    is not necessarily the parity outcome: a captured payment may since have
    been refunded, and a refunded payment must never look captured again.
    """
    now = datetime.now(timezone.utc)
    amount = amount.quantize(CENTS)
    status = charge_outcome(payment_id)

    try:
        await session.execute(
            insert(payments).values(
                payment_id=payment_id,
                order_id=order_id,
                amount=amount,
                currency=currency,
                status=status,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        recorded = await session.execute(
            select(payments.c.status).where(payments.c.payment_id == payment_id)
        )
        status = recorded.scalar_one()
        await session.rollback()
        logger.info("Charge %s replayed, recorded status is %s", payment_id, status)
        return {"status": status, "paymentId": payment_id}

    logger.info(
        "Charge %s order=%s amount=%s %s -> %s",
        payment_id, order_id, amount, currency, status,
    )
    event_cls = PaymentCaptured if status == CAPTURED else PaymentFailed
    await publish(redis, CHANNEL, event_cls(
        payment_id=payment_id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        timestamp=now,
    ))
    return {"status": status, "paymentId": payment_id}


async def refund(
    session: AsyncSession,
    redis: aioredis.Redis,
    payment_id: str,
    amount: Decimal | None,
    reason: str | None,
) -> dict:
    """
    Refund command

    Only a captured payment can be refunded (captured → refunded is the single
    legal mutation of a payment record).
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(payments.c.amount, payments.c.status)
        .where(payments.c.payment_id == payment_id)
        .with_for_update()
    )
    row = result.first()
    if not row:
        await session.rollback()
        raise NotFound("Payment not found")
    if row.status != CAPTURED:
        await session.rollback()
        raise Conflict("Payment cannot be refunded")

    captured = Decimal(row.amount).quantize(CENTS)
    refund_amount = amount.quantize(CENTS) if amount is not None else captured
    if refund_amount > captured:
        await session.rollback()
        raise ValidationFailed("Refund amount exceeds captured amount")
    reason = reason or "User request"

    await session.execute(
        update(payments)
        .where(payments.c.payment_id == payment_id)
        .values(
            status=REFUNDED,
            refunded_amount=refund_amount,
            refund_reason=reason,
            updated_at=now,
        )
    )
    await session.commit()

    logger.info("Refunded %s amount=%s reason=%s", payment_id, refund_amount, reason)
    await publish(redis, CHANNEL, PaymentRefunded(
        payment_id=payment_id,
        amount=refund_amount,
        reason=reason,
        timestamp=now,
    ))
    return {
        "refunded": True,
        "paymentId": payment_id,
        "amount": float(refund_amount),
        "reason": reason,
    }
