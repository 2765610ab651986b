# tests/test_saga.py
"""
End-to-end runs of POST /orders/{id}/pay against the in-process services.
Failures of individual leaf calls are injected by wrapping the real HTTP
gateways.
"""

import asyncio
import json
from dataclasses import replace

import pytest

from storefront.common.errors import Conflict, UpstreamFailure
from storefront.orders import main as orders_main
from storefront.orders import outbox
from storefront.orders.aggregate import CREATED_PAID, DELIVERED_TO_PICKUP, FAILED, RECEIVED
from storefront.orders.saga import OrderSaga, SagaSettings
from tests.conftest import user_headers

BUYER = "buyer@example.com"


class DecliningPayments:
    """Every charge is declined."""

    def __init__(self):
        self.payment_ids = []

    async def charge(self, payment_id, amount, currency, order_id):
        self.payment_ids.append(payment_id)
        return False

    async def refund(self, payment_id, reason):
        raise AssertionError("nothing was captured")


class TimeoutFirstCharge:
    """First charge times out, the rest go to the real payments service."""

    def __init__(self, real):
        self.real = real
        self.calls = 0

    async def charge(self, payment_id, amount, currency, order_id):
        self.calls += 1
        if self.calls == 1:
            raise UpstreamFailure("POST /payments/charge failed: ReadTimeout")
        return await self.real.charge(payment_id, amount, currency, order_id)

    async def refund(self, payment_id, reason):
        return await self.real.refund(payment_id, reason)


class FlakyInventory:
    """Delegates to the real inventory client, failing the named operations."""

    def __init__(self, real, failing: set[str]):
        self.real = real
        self.failing = failing

    async def _call(self, name, *args):
        if name in self.failing:
            raise UpstreamFailure(f"POST /inventory/{name} failed: ConnectError")
        return await getattr(self.real, name)(*args)

    async def reserve(self, reservation_id, product_id, qty):
        return await self._call("reserve", reservation_id, product_id, qty)

    async def commit(self, reservation_id):
        return await self._call("commit", reservation_id)

    async def release(self, reservation_id):
        return await self._call("release", reservation_id)


class DownShipping:
    async def fulfill(self, order_id, recipient):
        raise UpstreamFailure("POST /shipping/fulfill failed: ConnectError")


class LostChargeAnswer:
    """Charges reach the real payments service; the answers for `lost` ids never arrive."""

    def __init__(self, real, lost: set[str]):
        self.real = real
        self.lost = lost

    async def charge(self, payment_id, amount, currency, order_id):
        captured = await self.real.charge(payment_id, amount, currency, order_id)
        if payment_id in self.lost:
            raise UpstreamFailure("POST /payments/charge failed: ReadTimeout")
        return captured

    async def refund(self, payment_id, reason):
        return await self.real.refund(payment_id, reason)


class CrashingFirstCharge:
    """First charge raises an error no gateway is expected to raise."""

    def __init__(self, real):
        self.real = real
        self.calls = 0

    async def charge(self, payment_id, amount, currency, order_id):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("payment gateway crashed")
        return await self.real.charge(payment_id, amount, currency, order_id)

    async def refund(self, payment_id, reason):
        return await self.real.refund(payment_id, reason)


class CrashingShipping:
    async def fulfill(self, order_id, recipient):
        raise ValueError("unreadable shipping answer")


class CrashingCommit:
    def __init__(self, real):
        self.real = real

    async def reserve(self, reservation_id, product_id, qty):
        return await self.real.reserve(reservation_id, product_id, qty)

    async def commit(self, reservation_id):
        raise KeyError("reservationId")

    async def release(self, reservation_id):
        return await self.real.release(reservation_id)


class DuplicateReservation:
    """Reserve is refused as a duplicate id rather than for lack of stock."""

    def __init__(self, real):
        self.real = real

    async def reserve(self, reservation_id, product_id, qty):
        raise Conflict("Reservation already exists")

    async def commit(self, reservation_id):
        return await self.real.commit(reservation_id)

    async def release(self, reservation_id):
        return await self.real.release(reservation_id)


def _use_gateways(gateways):
    orders_main.app.dependency_overrides[orders_main.get_gateways] = lambda: gateways


async def _pay(services, order_id: int, user_id: int = 1):
    return await services.orders.post(
        f"/orders/{order_id}/pay", headers=user_headers(user_id, BUYER)
    )


async def _order(services, order_id: int, user_id: int = 1) -> dict:
    return (await services.orders.get(f"/orders/{order_id}", headers=user_headers(user_id))).json()


async def _compensations(services) -> list[dict]:
    return (await services.orders.get("/compensations")).json()


@pytest.mark.asyncio
async def test_pay_happy_path_to_receipt(services):
    product_id = await services.add_product(price="20.00", stock=10)
    order = await services.create_order(1, product_id, 3)

    resp = await _pay(services, order["id"])
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["order"]["status"] == CREATED_PAID
    tracking_id = body["order"]["trackingId"]
    assert tracking_id.startswith(f"TRK-{order['id']}-")

    # attempt 1 uses an odd payment id and is declined, attempt 2 is captured
    payments = (await services.payments.get(f"/payments/order/{order['id']}")).json()
    assert [(p["paymentId"], p["status"]) for p in payments] == [
        (f"p-{order['id']}-2", "captured"),
        (f"p-{order['id']}-1", "failed"),
    ]
    assert payments[0]["amount"] == 60.0
    assert payments[0]["currency"] == "USD"

    assert await services.stock_of(product_id) == 7
    notes = await services.notifications_for(BUYER)
    assert notes[0]["type"] == "order_confirmed"
    assert notes[0]["payload"] == {"id": order["id"], "trackingId": tracking_id}
    assert await _compensations(services) == []

    for _ in range(3):
        await services.shipping.post("/shipping/advance", json={"trackingId": tracking_id})
    assert (await _order(services, order["id"]))["status"] == DELIVERED_TO_PICKUP

    resp = await services.orders.post(f"/orders/{order['id']}/received", headers=user_headers(1))
    assert resp.json() == {"ok": True}
    assert (await _order(services, order["id"]))["status"] == RECEIVED


@pytest.mark.asyncio
async def test_late_status_push_never_regresses(services):
    product_id = await services.add_product(stock=5)
    order = await services.create_order(1, product_id, 1)
    await _pay(services, order["id"])

    resp = await services.orders.post(f"/orders/{order['id']}/status", json={"status": "in_transit"})
    assert resp.json() == {"ok": True, "applied": True}
    resp = await services.orders.post(f"/orders/{order['id']}/status", json={"status": "collected"})
    assert resp.json() == {"ok": True, "applied": False}
    assert (await _order(services, order["id"]))["status"] == "in_transit"


@pytest.mark.asyncio
async def test_declined_payment_releases_stock_and_fails_order(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 4)
    payments = DecliningPayments()
    _use_gateways(replace(services.gateways, payments=payments))

    resp = await _pay(services, order["id"])
    assert resp.status_code == 402
    assert resp.json() == {"error": "Payment failed", "code": "PAYMENT_DECLINED"}

    oid = order["id"]
    assert payments.payment_ids == [f"p-{oid}-1", f"p-{oid}-2", f"p-{oid}-3"]
    assert (await _order(services, oid))["status"] == FAILED
    assert await services.stock_of(product_id) == 10
    notes = await services.notifications_for(BUYER)
    assert notes[0]["type"] == "payment_failed"
    assert await _compensations(services) == []


@pytest.mark.asyncio
async def test_failed_order_can_be_paid_again(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 2)
    _use_gateways(replace(services.gateways, payments=DecliningPayments()))
    assert (await _pay(services, order["id"])).status_code == 402

    orders_main.app.dependency_overrides.clear()
    resp = await _pay(services, order["id"])
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == CREATED_PAID
    assert await services.stock_of(product_id) == 8


@pytest.mark.asyncio
async def test_insufficient_stock_fails_order_with_409(services):
    product_id = await services.add_product(stock=1)
    order = await services.create_order(1, product_id, 2)

    resp = await _pay(services, order["id"])
    assert resp.status_code == 409
    assert resp.json()["error"] == "Stock reservation failed"

    assert (await _order(services, order["id"]))["status"] == FAILED
    assert await services.stock_of(product_id) == 1
    assert (await services.payments.get(f"/payments/order/{order['id']}")).json() == []
    notes = await services.notifications_for(BUYER)
    assert notes[0]["type"] == "order_failed"
    assert notes[0]["payload"] == {"id": order["id"], "reason": "stock"}


@pytest.mark.asyncio
async def test_pay_preconditions(services):
    product_id = await services.add_product(stock=5)
    order = await services.create_order(1, product_id, 1)

    assert (await _pay(services, 999)).status_code == 404
    assert (await _pay(services, order["id"], user_id=2)).status_code == 403
    assert (await _pay(services, order["id"])).status_code == 200

    resp = await _pay(services, order["id"])
    assert resp.status_code == 409
    assert resp.json()["error"] == "Order not payable"


@pytest.mark.asyncio
async def test_concurrent_pay_runs_one_saga(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 2)

    responses = await asyncio.gather(*[_pay(services, order["id"]) for _ in range(3)])

    codes = sorted(r.status_code for r in responses)
    assert codes == [200, 409, 409]
    assert await services.stock_of(product_id) == 8
    captured = [
        p for p in (await services.payments.get(f"/payments/order/{order['id']}")).json()
        if p["status"] == "captured"
    ]
    assert len(captured) == 1


@pytest.mark.asyncio
async def test_inventory_down_during_reserve_is_503(services):
    product_id = await services.add_product(stock=5)
    order = await services.create_order(1, product_id, 1)
    inventory = FlakyInventory(services.gateways.inventory, failing={"reserve"})
    _use_gateways(replace(services.gateways, inventory=inventory))

    resp = await _pay(services, order["id"])
    assert resp.status_code == 503

    assert (await _order(services, order["id"]))["status"] == FAILED
    notes = await services.notifications_for(BUYER)
    assert notes[0]["payload"] == {"id": order["id"], "reason": "inventory_unavailable"}
    # release answered 404: nothing had been reserved, nothing to queue
    assert await _compensations(services) == []


@pytest.mark.asyncio
async def test_failed_release_is_queued_and_drained(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 3)
    inventory = FlakyInventory(services.gateways.inventory, failing={"release"})
    broken = replace(services.gateways, inventory=inventory, payments=DecliningPayments())
    _use_gateways(broken)

    assert (await _pay(services, order["id"])).status_code == 402
    assert await services.stock_of(product_id) == 7

    [entry] = await _compensations(services)
    assert entry["action"] == outbox.RELEASE
    assert entry["status"] == outbox.PENDING
    assert entry["payload"]["reservationId"].startswith(f"r-{order['id']}-")

    # still down: attempt counted, row stays pending
    assert await outbox.drain(orders_main.async_session, broken, max_attempts=3) == 0
    [entry] = await _compensations(services)
    assert entry["attempts"] == 1
    assert entry["lastError"]

    assert await outbox.drain(orders_main.async_session, services.gateways, max_attempts=3) == 1
    [entry] = await _compensations(services)
    assert entry["status"] == outbox.DONE
    assert await services.stock_of(product_id) == 10


@pytest.mark.asyncio
async def test_outbox_row_goes_dead_after_max_attempts(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    inventory = FlakyInventory(services.gateways.inventory, failing={"release"})
    broken = replace(services.gateways, inventory=inventory, payments=DecliningPayments())
    _use_gateways(broken)
    await _pay(services, order["id"])

    for _ in range(2):
        await outbox.drain(orders_main.async_session, broken, max_attempts=2)

    [entry] = await _compensations(services)
    assert entry["status"] == outbox.DEAD
    assert entry["attempts"] == 2
    assert (await services.orders.get("/compensations", params={"status": "dead"})).json() == [entry]


@pytest.mark.asyncio
async def test_timed_out_charge_is_refunded_through_outbox(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    payments = TimeoutFirstCharge(services.gateways.payments)
    _use_gateways(replace(services.gateways, payments=payments))

    resp = await _pay(services, order["id"])
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == CREATED_PAID

    [entry] = await _compensations(services)
    assert entry["action"] == outbox.REFUND
    assert entry["payload"]["paymentId"] == f"p-{order['id']}-1"

    # the timed-out charge never reached the payments service: 404 counts as done
    assert await outbox.drain(orders_main.async_session, services.gateways) == 1
    assert (await _compensations(services))[0]["status"] == outbox.DONE


@pytest.mark.asyncio
async def test_failed_fulfill_is_completed_by_outbox(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    _use_gateways(replace(services.gateways, shipping=DownShipping()))

    resp = await _pay(services, order["id"])
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == CREATED_PAID
    assert resp.json()["order"]["trackingId"] is None
    assert await services.stock_of(product_id) == 9

    [entry] = await _compensations(services)
    assert entry["action"] == outbox.FULFILL
    assert entry["payload"] == {"recipient": BUYER}

    assert await outbox.drain(orders_main.async_session, services.gateways) == 1
    tracking_id = (await _order(services, order["id"]))["trackingId"]
    assert tracking_id.startswith(f"TRK-{order['id']}-")
    track = (await services.shipping.get(f"/shipping/track/{tracking_id}")).json()
    assert track["orderId"] == order["id"]


@pytest.mark.asyncio
async def test_saga_publishes_order_status_changes(services):
    product_id = await services.add_product(stock=5)
    order = await services.create_order(1, product_id, 1)
    await _pay(services, order["id"])

    order_events = [
        json.loads(c.args[1])
        for c in services.redis.publish.await_args_list
        if c.args[0] == "order_events"
    ]
    assert [e["event_type"] for e in order_events] == [
        "OrderCreated", "OrderStatusChanged", "OrderStatusChanged",
    ]
    assert [e["data"]["to_status"] for e in order_events[1:]] == ["paying", CREATED_PAID]
    assert order_events[2]["data"]["tracking_id"].startswith(f"TRK-{order['id']}-")


def _saga(services, gateways) -> OrderSaga:
    return OrderSaga(orders_main.async_session, services.redis, gateways, SagaSettings(backoff_seconds=0))


async def _captured(services, order_id: int) -> list[str]:
    payments = (await services.payments.get(f"/payments/order/{order_id}")).json()
    return [p["paymentId"] for p in payments if p["status"] == "captured"]


@pytest.mark.asyncio
async def test_refunded_capture_never_pays_for_the_order_again(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    oid = order["id"]
    # p-N-2 is captured but its answer is lost, p-N-1 and p-N-3 are declined
    payments = LostChargeAnswer(services.gateways.payments, lost={f"p-{oid}-2"})
    _use_gateways(replace(services.gateways, payments=payments))

    assert (await _pay(services, oid)).status_code == 402
    [entry] = await _compensations(services)
    assert entry["action"] == outbox.REFUND
    assert entry["payload"]["paymentId"] == f"p-{oid}-2"

    assert await outbox.drain(orders_main.async_session, services.gateways) == 1
    assert (await services.payments.get(f"/payments/p-{oid}-2")).json()["status"] == "refunded"

    orders_main.app.dependency_overrides.clear()
    resp = await _pay(services, oid)
    assert resp.status_code == 402
    assert (await _order(services, oid))["status"] == FAILED
    assert await _captured(services, oid) == []
    assert await services.stock_of(product_id) == 10


@pytest.mark.asyncio
async def test_capture_awaiting_refund_is_skipped_on_retry(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    oid = order["id"]
    payments = LostChargeAnswer(services.gateways.payments, lost={f"p-{oid}-2"})
    _use_gateways(replace(services.gateways, payments=payments))
    assert (await _pay(services, oid)).status_code == 402

    # refund still pending: the captured p-N-2 is not taken as payment
    orders_main.app.dependency_overrides.clear()
    assert (await _pay(services, oid)).status_code == 402
    assert (await _order(services, oid))["status"] == FAILED

    assert await outbox.drain(orders_main.async_session, services.gateways) == 1
    assert await _captured(services, oid) == []


@pytest.mark.asyncio
async def test_unexpected_error_after_capture_leaves_order_paid(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 1)
    gateways = replace(services.gateways, shipping=CrashingShipping())

    with pytest.raises(ValueError):
        await _saga(services, gateways).pay(order["id"], 1, BUYER)

    current = await _order(services, order["id"])
    assert current["status"] == CREATED_PAID
    assert current["trackingId"] is None
    assert await _captured(services, order["id"]) == [f"p-{order['id']}-2"]
    [entry] = await _compensations(services)
    assert (entry["action"], entry["status"]) == (outbox.FULFILL, outbox.PENDING)
    notes = await services.notifications_for(BUYER)
    assert notes[0]["type"] == "order_confirmed"

    assert await outbox.drain(orders_main.async_session, services.gateways) == 1
    assert (await _order(services, order["id"]))["trackingId"].startswith(f"TRK-{order['id']}-")
    assert await services.stock_of(product_id) == 9


@pytest.mark.asyncio
async def test_unexpected_error_during_commit_queues_remaining_steps(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 2)
    gateways = replace(services.gateways, inventory=CrashingCommit(services.gateways.inventory))

    with pytest.raises(KeyError):
        await _saga(services, gateways).pay(order["id"], 1, BUYER)

    assert (await _order(services, order["id"]))["status"] == CREATED_PAID
    assert [e["action"] for e in await _compensations(services)] == [outbox.COMMIT, outbox.FULFILL]

    assert await outbox.drain(orders_main.async_session, services.gateways) == 2
    assert await services.stock_of(product_id) == 8
    assert (await _order(services, order["id"]))["trackingId"] is not None


@pytest.mark.asyncio
async def test_unexpected_error_before_capture_fails_order(services):
    product_id = await services.add_product(stock=10)
    order = await services.create_order(1, product_id, 3)
    oid = order["id"]
    gateways = replace(services.gateways, payments=CrashingFirstCharge(services.gateways.payments))

    with pytest.raises(RuntimeError):
        await _saga(services, gateways).pay(oid, 1, BUYER)

    assert (await _order(services, oid))["status"] == FAILED
    assert await services.stock_of(product_id) == 10
    # the crashed call may have charged: queued for refund
    [entry] = await _compensations(services)
    assert entry["action"] == outbox.REFUND
    assert entry["payload"]["paymentId"] == f"p-{oid}-1"
    notes = await services.notifications_for(BUYER)
    assert notes[0]["payload"] == {"id": oid, "reason": "internal_error"}

    resp = await _pay(services, oid)
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == CREATED_PAID
    assert await _captured(services, oid) == [f"p-{oid}-2"]


@pytest.mark.asyncio
async def test_duplicate_reservation_is_503_not_stock(services):
    product_id = await services.add_product(stock=5)
    order = await services.create_order(1, product_id, 1)
    inventory = DuplicateReservation(services.gateways.inventory)
    _use_gateways(replace(services.gateways, inventory=inventory))

    resp = await _pay(services, order["id"])
    assert resp.status_code == 503
    assert resp.json()["error"] == "Inventory unavailable"

    assert (await _order(services, order["id"]))["status"] == FAILED
    notes = await services.notifications_for(BUYER)
    assert notes[0]["payload"] == {"id": order["id"], "reason": "inventory_unavailable"}
    assert await services.stock_of(product_id) == 5
