"""
Order Service — order fulfillment saga (orchestration)

The pay operation drives the leaf services in a fixed order. There is no
transaction spanning them: a failure before the payment is captured is
undone with compensating actions, a failure after it is retried forward.

  ┌──────────────────────────────────────────────────────────────────┐
  │ 0. claim      order created_unpaid/failed → paying (atomic)      │
  │ 1. reserve    inventory hold          ✗ → failed     (409/503)   │
  │ 2. price      amount = price × qty                               │
  │ 3. charge     up to 3 attempts        ✗ → release, failed (402)  │
  │ ─────────────── pivot: payment captured ──────────────────────── │
  │ 4. commit     inventory hold becomes permanent                   │
  │ 5. fulfill    shipment opened, tracking id                       │
  │ 6. paid       order created_paid + tracking id, user notified    │
  └──────────────────────────────────────────────────────────────────┘

A compensation or post-pivot call that fails is written to the outbox and
retried by the worker instead of being lost.

Once the order is claimed it must leave `paying` whatever happens, or every
later pay answers "Order not payable". Each step records its progress on a
SagaRun; if an error that no step handles escapes, the run is used to finish
the order the way the pivot dictates (failed and compensated before the
capture, created_paid with the remaining steps queued after it) and the
error is raised again.

Payment ids are p-{order}-{attempt}, so paying a failed order again replays
the ids of the earlier run. An id that the earlier run queued for refund
(its charge timed out and may have gone through) is skipped: it cannot pay
for the order even while the refund is still pending.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common.errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    PaymentDeclined,
    UpstreamFailure,
)

from . import commands, outbox, queries
from .aggregate import CREATED_PAID, FAILED
from .clients import SagaGateways

CENTS = Decimal("0.01")

logger = logging.getLogger(__name__)


@dataclass
class SagaSettings:
    max_charge_attempts: int = 3
    backoff_seconds: float = 0.2
    currency: str = "USD"


@dataclass
class ChargeOutcome:
    payment_id: str | None = None
    # attempts that errored or timed out: the charge may have gone through
    unknown: list[str] = field(default_factory=list)
    # the attempt whose call is in flight
    in_flight: str | None = None

    @property
    def captured(self) -> bool:
        return self.payment_id is not None


@dataclass
class SagaRun:
    """Progress of one pay call."""

    order_id: int
    recipient: str
    reservation_id: str
    charge: ChargeOutcome = field(default_factory=ChargeOutcome)
    committed: bool = False
    refunds_queued: bool = False
    fulfill_handled: bool = False
    tracking_id: str | None = None
    # the order status has been settled (failed or created_paid)
    finished: bool = False


def reservation_id_for(order_id: int) -> str:
    """Fresh per pay attempt; a retried pay never reuses an old reservation."""
    return f"r-{order_id}-{int(time.time() * 1000)}"


def payment_id_for(order_id: int, attempt: int) -> str:
    return f"p-{order_id}-{attempt}"


class OrderSaga:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis | None,
        gateways: SagaGateways,
        settings: SagaSettings | None = None,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.gateways = gateways
        self.settings = settings or SagaSettings()

    async def pay(self, order_id: int, user_id: int, recipient: str) -> dict:
        """
        Run the saga for one order and return the updated order.

        Raises NotFound / Forbidden / Conflict before anything is touched,
        InsufficientStock (409) or UpstreamFailure (503) when the reservation
        fails and PaymentDeclined (402) when every charge attempt fails.
        """
        # ── Step 0: claim the order ────────────────────
        async with self.session_factory() as session:
            order = await commands.claim_for_payment(session, self.redis, order_id, user_id)

        run = SagaRun(order_id, recipient, reservation_id_for(order_id))
        logger.info(
            "[order=%s] SAGA START product=%s qty=%s reservation=%s",
            order_id, order.product_id, order.qty, run.reservation_id,
        )
        try:
            return await self._run(run, order.product_id, order.qty)
        except Exception:
            if not run.finished:
                logger.exception("[order=%s] saga interrupted, settling the order", order_id)
                await self._settle_interrupted(run)
            raise

    async def _run(self, run: SagaRun, product_id: int, qty: int) -> dict:
        order_id, recipient = run.order_id, run.recipient

        # ── Step 1: reserve stock ──────────────────────
        try:
            await self.gateways.inventory.reserve(run.reservation_id, product_id, qty)
        except InsufficientStock as e:
            logger.info("[order=%s] reservation refused: %s", order_id, e.message)
            await self.gateways.notifier.send(
                "order_failed", recipient, {"id": order_id, "reason": "stock"}
            )
            await self._finish(run, FAILED)
            raise InsufficientStock("Stock reservation failed")
        except (Conflict, UpstreamFailure) as e:
            # the hold may exist even though the call failed
            logger.warning("[order=%s] reservation outcome unknown: %s", order_id, e.message)
            await self.gateways.notifier.send(
                "order_failed", recipient, {"id": order_id, "reason": "inventory_unavailable"}
            )
            await self._release(order_id, run.reservation_id)
            await self._finish(run, FAILED)
            raise UpstreamFailure("Inventory unavailable")

        # ── Step 2: price the order ────────────────────
        async with self.session_factory() as session:
            price = await queries.get_product_price(session, product_id)
        if price is None:
            await self._release(order_id, run.reservation_id)
            await self._finish(run, FAILED)
            raise NotFound("Product not found")
        amount = (price * qty).quantize(CENTS)

        # ── Step 3: charge ─────────────────────────────
        await self._charge(run, amount)
        if not run.charge.captured:
            logger.info("[order=%s] payment failed, compensating", order_id)
            await self.gateways.notifier.send("payment_failed", recipient, {"id": order_id})
            await self._release(order_id, run.reservation_id)
            await self._queue_refunds(run)
            await self._finish(run, FAILED)
            raise PaymentDeclined("Payment failed")

        # ── Step 4: commit stock (no compensation past this point) ──
        await self._commit(order_id, run.reservation_id)
        run.committed = True
        await self._queue_refunds(run)

        # ── Step 5: open the shipment ──────────────────
        run.tracking_id = await self._fulfill(order_id, recipient)
        run.fulfill_handled = True

        # ── Step 6: mark paid and notify ───────────────
        await self._finish(run, CREATED_PAID)
        await self.gateways.notifier.send(
            "order_confirmed", recipient, {"id": order_id, "trackingId": run.tracking_id}
        )
        logger.info(
            "[order=%s] SAGA OK payment=%s amount=%s tracking=%s",
            order_id, run.charge.payment_id, amount, run.tracking_id,
        )

        async with self.session_factory() as session:
            return await queries.get_order(session, order_id)

    async def _charge(self, run: SagaRun, amount: Decimal) -> None:
        """
        Up to max_charge_attempts charges, a new payment id each time, stopping
        at the first capture. Backoff doubles between attempts.
        """
        order_id, outcome = run.order_id, run.charge
        async with self.session_factory() as session:
            spent = await outbox.refund_queued_payment_ids(session, order_id)

        attempts = self.settings.max_charge_attempts
        for attempt in range(1, attempts + 1):
            payment_id = payment_id_for(order_id, attempt)
            if payment_id in spent:
                logger.info("[order=%s] skipping %s, it is queued for refund", order_id, payment_id)
                continue
            outcome.in_flight = payment_id
            try:
                captured = await self.gateways.payments.charge(
                    payment_id, amount, self.settings.currency, order_id
                )
            except UpstreamFailure as e:
                logger.warning("[order=%s] charge %s outcome unknown: %s", order_id, payment_id, e.message)
                outcome.unknown.append(payment_id)
                captured = False
            else:
                if not captured:
                    logger.info("[order=%s] charge %s declined", order_id, payment_id)
            outcome.in_flight = None
            if captured:
                outcome.payment_id = payment_id
                return
            if attempt < attempts:
                await asyncio.sleep(self.settings.backoff_seconds * 2 ** (attempt - 1))

    async def _settle_interrupted(self, run: SagaRun) -> None:
        """
        Take the order out of `paying` after an unhandled error.

        Before the capture the order fails: the reservation is released and any
        charge whose outcome is unknown is queued for refund. After the capture
        the order is paid: whatever of commit / fulfill did not happen is
        queued. Errors here are logged so the original one is the one raised.
        """
        order_id = run.order_id
        try:
            if run.charge.in_flight:
                run.charge.unknown.append(run.charge.in_flight)
                run.charge.in_flight = None

            if not run.charge.captured:
                await self._release(order_id, run.reservation_id)
                await self._queue_refunds(run)
                await self._finish(run, FAILED)
                await self.gateways.notifier.send(
                    "order_failed", run.recipient, {"id": order_id, "reason": "internal_error"}
                )
                return

            if not run.committed:
                await self._enqueue(order_id, outbox.COMMIT, {"reservationId": run.reservation_id})
            await self._queue_refunds(run)
            if not run.fulfill_handled:
                await self._enqueue(order_id, outbox.FULFILL, {"recipient": run.recipient})
            await self._finish(run, CREATED_PAID)
            await self.gateways.notifier.send(
                "order_confirmed", run.recipient, {"id": order_id, "trackingId": run.tracking_id}
            )
        except Exception:
            logger.exception("[order=%s] could not settle the order, left in paying", order_id)

    async def _release(self, order_id: int, reservation_id: str) -> None:
        try:
            await self.gateways.inventory.release(reservation_id)
        except NotFound:
            logger.info("[order=%s] nothing held under %s", order_id, reservation_id)
        except UpstreamFailure as e:
            logger.warning("[order=%s] release %s failed: %s", order_id, reservation_id, e.message)
            await self._enqueue(order_id, outbox.RELEASE, {"reservationId": reservation_id})

    async def _commit(self, order_id: int, reservation_id: str) -> None:
        try:
            await self.gateways.inventory.commit(reservation_id)
        except NotFound:
            # released or committed by someone else: an upstream logic bug
            logger.error("[order=%s] reservation %s vanished before commit", order_id, reservation_id)
        except UpstreamFailure as e:
            logger.warning("[order=%s] commit %s failed: %s", order_id, reservation_id, e.message)
            await self._enqueue(order_id, outbox.COMMIT, {"reservationId": reservation_id})

    async def _queue_refunds(self, run: SagaRun) -> None:
        if run.refunds_queued:
            return
        for payment_id in run.charge.unknown:
            await self._enqueue(
                run.order_id, outbox.REFUND, {"paymentId": payment_id, "reason": "Saga compensation"}
            )
        run.refunds_queued = True

    async def _fulfill(self, order_id: int, recipient: str) -> str | None:
        try:
            return await self.gateways.shipping.fulfill(order_id, recipient)
        except UpstreamFailure as e:
            logger.warning("[order=%s] fulfill failed: %s", order_id, e.message)
            await self._enqueue(order_id, outbox.FULFILL, {"recipient": recipient})
            return None

    async def _enqueue(self, order_id: int, action: str, payload: dict) -> None:
        async with self.session_factory() as session:
            await outbox.enqueue(session, order_id, action, payload)

    async def _finish(self, run: SagaRun, status: str) -> None:
        async with self.session_factory() as session:
            await commands.set_status(session, self.redis, run.order_id, status, run.tracking_id)
        run.finished = True
