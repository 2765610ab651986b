"""
Order Service — FastAPI entry point

Order Ledger: products, orders and their status. `POST /orders/{id}/pay`
runs the fulfillment saga (see saga.py); the compensation outbox worker is
started with the app.

Identity is taken from the gateway headers X-User-Id / X-User-Email.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Literal

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header
from pydantic import Field

from storefront.common.db import make_engine, make_session_factory
from storefront.common.errors import Forbidden, NotFound, Unauthorized, install_error_handlers
from storefront.common.logging import setup_logging
from storefront.common.notify import NotificationClient
from storefront.common.schemas import CamelModel

from . import commands, outbox, queries
from .clients import HttpInventoryClient, HttpPaymentClient, HttpShippingClient, SagaGateways
from .saga import OrderSaga, SagaSettings
from .tables import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
INVENTORY_URL = os.environ.get("INVENTORY_URL", "http://inventory:8000")
PAYMENTS_URL = os.environ.get("PAYMENTS_URL", "http://payments:8000")
SHIPPING_URL = os.environ.get("SHIPPING_URL", "http://shipping:8000")
NOTIFY_URL = os.environ.get("NOTIFY_URL", "http://notifications:8000")
LEAF_TIMEOUT_SECONDS = float(os.environ.get("LEAF_TIMEOUT_SECONDS", "5"))
CHARGE_BACKOFF_SECONDS = float(os.environ.get("CHARGE_BACKOFF_SECONDS", "0.2"))
CHARGE_MAX_ATTEMPTS = int(os.environ.get("CHARGE_MAX_ATTEMPTS", "3"))
PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "USD")
OUTBOX_POLL_SECONDS = float(os.environ.get("OUTBOX_POLL_SECONDS", "5"))
OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "10"))

engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)
redis_pool: aioredis.Redis | None = None
gateways: SagaGateways | None = None

saga_settings = SagaSettings(
    max_charge_attempts=CHARGE_MAX_ATTEMPTS,
    backoff_seconds=CHARGE_BACKOFF_SECONDS,
    currency=PAYMENT_CURRENCY,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, gateways
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=LEAF_TIMEOUT_SECONDS)
    gateways = SagaGateways(
        inventory=HttpInventoryClient(http_client, INVENTORY_URL),
        payments=HttpPaymentClient(http_client, PAYMENTS_URL),
        shipping=HttpShippingClient(http_client, SHIPPING_URL),
        notifier=NotificationClient(http_client, NOTIFY_URL),
    )

    shutdown_event = asyncio.Event()
    worker = asyncio.create_task(
        outbox.run_worker(
            async_session, get_gateways, shutdown_event, OUTBOX_POLL_SECONDS, OUTBOX_MAX_ATTEMPTS
        )
    )
    yield
    shutdown_event.set()
    await worker
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


def get_gateways() -> SagaGateways:
    if gateways is None:
        raise RuntimeError("Order service gateways are not initialised")
    return gateways


def get_saga(saga_gateways: SagaGateways = Depends(get_gateways)) -> OrderSaga:
    return OrderSaga(async_session, redis_pool, saga_gateways, saga_settings)


class CurrentUser(CamelModel):
    id: int
    email: str


def current_user(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> CurrentUser:
    """Identity forwarded by the gateway; the recipient defaults to the user id"""
    try:
        user_id = int(x_user_id) if x_user_id else None
    except ValueError:
        user_id = None
    if user_id is None:
        raise Unauthorized("Unauthorized")
    return CurrentUser(id=user_id, email=x_user_email or str(user_id))


# ── Request Models ───────────────────────────────


class CreateProductRequest(CamelModel):
    name: str = Field(min_length=1)
    price: Decimal = Field(gt=0)


class CreateOrderRequest(CamelModel):
    product_id: int
    qty: int = Field(gt=0)


class StatusPush(CamelModel):
    status: Literal["processing", "collected", "in_transit", "delivered_to_pickup"]


# ── Product Endpoints ────────────────────────────


@app.get("/products")
async def query_products():
    async with async_session() as session:
        return await queries.list_products(session)


@app.post("/products", status_code=201)
async def cmd_create_product(
    req: CreateProductRequest,
    user: CurrentUser = Depends(current_user),
):
    async with async_session() as session:
        return await commands.create_product(session, user.id, req.name, req.price)


@app.get("/products/{product_id}")
async def query_product(product_id: int):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise NotFound("Product not found")
        return product


# ── Order Command Endpoints ──────────────────────


@app.post("/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    user: CurrentUser = Depends(current_user),
):
    async with async_session() as session:
        order = await commands.create_order(session, redis_pool, user.id, req.product_id, req.qty)
    return order.to_dict()


@app.post("/orders/{order_id}/pay")
async def cmd_pay(
    order_id: int,
    user: CurrentUser = Depends(current_user),
    saga: OrderSaga = Depends(get_saga),
):
    """Run the fulfillment saga (200 / 402 / 409 / 503)"""
    order = await saga.pay(order_id, user.id, user.email)
    return {"ok": True, "order": order}


@app.post("/orders/{order_id}/cancel")
async def cmd_cancel(
    order_id: int,
    user: CurrentUser = Depends(current_user),
    saga_gateways: SagaGateways = Depends(get_gateways),
):
    async with async_session() as session:
        await commands.cancel_order(session, redis_pool, order_id, user.id)
    await saga_gateways.notifier.send("order_cancelled", user.email, {"id": order_id})
    return {"cancelled": True}


@app.post("/orders/{order_id}/received")
async def cmd_received(order_id: int, user: CurrentUser = Depends(current_user)):
    async with async_session() as session:
        await commands.mark_received(session, redis_pool, order_id, user.id)
    return {"ok": True}


@app.post("/orders/{order_id}/status")
async def cmd_status_push(order_id: int, req: StatusPush):
    """Internal: stage updates pushed by the shipping service"""
    async with async_session() as session:
        applied = await commands.apply_shipping_stage(session, redis_pool, order_id, req.status)
    return {"ok": True, "applied": applied}


# ── Order Query Endpoints ────────────────────────


@app.get("/orders")
async def query_orders(user: CurrentUser = Depends(current_user)):
    async with async_session() as session:
        return await queries.list_orders(session, user.id)


@app.get("/orders/{order_id}")
async def query_order(order_id: int, user: CurrentUser = Depends(current_user)):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise NotFound("Not found")
    if order["userId"] != user.id:
        raise Forbidden("Forbidden")
    return order


@app.get("/compensations")
async def query_compensations(status: str | None = None):
    async with async_session() as session:
        return await outbox.list_entries(session, status)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
