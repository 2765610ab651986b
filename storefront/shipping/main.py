"""
Shipping Service — FastAPI entry point

Shipment Tracker: opens shipments for paid orders and walks them through
processing → collected → in_transit → delivered_to_pickup. Advancement is
triggered from outside (frontend polling / carrier scans).
"""

import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from pydantic import Field

from storefront.common.db import make_engine, make_session_factory
from storefront.common.errors import NotFound, install_error_handlers
from storefront.common.logging import setup_logging
from storefront.common.notify import NotificationClient
from storefront.common.schemas import CamelModel

from . import commands, queries
from .clients import HttpOrderStatusClient, StageCallbacks
from .tables import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDERS_URL = os.environ.get("ORDERS_URL", "http://orders:8000")
NOTIFY_URL = os.environ.get("NOTIFY_URL", "http://notifications:8000")
LEAF_TIMEOUT_SECONDS = float(os.environ.get("LEAF_TIMEOUT_SECONDS", "5"))

engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)
redis_pool: aioredis.Redis | None = None
callbacks: StageCallbacks | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, callbacks
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=LEAF_TIMEOUT_SECONDS)
    callbacks = StageCallbacks(
        orders=HttpOrderStatusClient(http_client, ORDERS_URL),
        notifier=NotificationClient(http_client, NOTIFY_URL),
    )
    yield
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Shipping Service", lifespan=lifespan)
install_error_handlers(app)


def get_callbacks() -> StageCallbacks:
    if callbacks is None:
        raise RuntimeError("Shipping service clients are not initialised")
    return callbacks


# ── Request Models ───────────────────────────────


class FulfillRequest(CamelModel):
    order_id: int
    recipient: str = Field(default="user", min_length=1)


class AdvanceRequest(CamelModel):
    tracking_id: str = Field(min_length=1)


class QuoteRequest(CamelModel):
    order_id: str = Field(min_length=1)
    address: str = Field(min_length=3)


# ── Command Endpoints ────────────────────────────


@app.post("/shipping/fulfill")
async def cmd_fulfill(req: FulfillRequest):
    async with async_session() as session:
        return await commands.fulfill(session, redis_pool, req.order_id, req.recipient)


@app.post("/shipping/advance")
async def cmd_advance(
    req: AdvanceRequest,
    stage_callbacks: StageCallbacks = Depends(get_callbacks),
):
    """Advance one stage; `done` is true once delivered_to_pickup is reached"""
    async with async_session() as session:
        change = await commands.advance(session, redis_pool, req.tracking_id)
    if change.advanced:
        await commands.propagate_stage(stage_callbacks, change)
    return {"status": change.status, "done": change.done}


@app.post("/shipping/quote")
async def cmd_quote(req: QuoteRequest):
    return commands.quote(req.order_id)


# ── Query Endpoints ──────────────────────────────


@app.get("/shipping/track/{tracking_id}")
async def query_track(tracking_id: str):
    async with async_session() as session:
        shipment = await queries.track(session, tracking_id)
        if not shipment:
            raise NotFound("Not found")
        return shipment


@app.get("/health")
async def health():
    return {"status": "ok", "service": "shipping-service"}
