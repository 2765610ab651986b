"""
Inventory Service — FastAPI entry point

Inventory Ledger: per-product stock and outstanding reservations.
The order saga calls reserve / commit / release; operators call set.
"""

import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Header
from pydantic import Field

from storefront.common.db import make_engine, make_session_factory
from storefront.common.errors import NotFound, Unauthorized, install_error_handlers
from storefront.common.logging import setup_logging
from storefront.common.schemas import CamelModel

from . import commands, queries
from .tables import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ADMIN_TOKEN = os.environ.get("INVENTORY_ADMIN_TOKEN", "dev-admin-token")

engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class ReserveRequest(CamelModel):
    reservation_id: str = Field(min_length=1)
    product_id: int
    qty: int = Field(gt=0)


class ReservationRef(CamelModel):
    reservation_id: str = Field(min_length=1)


class SetStockRequest(CamelModel):
    product_id: int
    qty: int = Field(ge=0)


# ── Command Endpoints ────────────────────────────


@app.post("/inventory/reserve")
async def cmd_reserve(req: ReserveRequest):
    """Hold stock for a reservation (saga step 1)"""
    async with async_session() as session:
        return await commands.reserve(
            session, redis_pool, req.reservation_id, req.product_id, req.qty
        )


@app.post("/inventory/commit")
async def cmd_commit(req: ReservationRef):
    """Turn a reservation into a permanent deduction"""
    async with async_session() as session:
        return await commands.commit(session, redis_pool, req.reservation_id)


@app.post("/inventory/release")
async def cmd_release(req: ReservationRef):
    """Return a reservation's quantity to stock (compensation)"""
    async with async_session() as session:
        return await commands.release(session, redis_pool, req.reservation_id)


@app.post("/inventory/set")
async def cmd_set_stock(
    req: SetStockRequest,
    x_admin_token: str | None = Header(default=None),
):
    """Administrative absolute stock set"""
    if x_admin_token != ADMIN_TOKEN:
        raise Unauthorized("Unauthorized")
    async with async_session() as session:
        return await commands.set_stock(session, redis_pool, req.product_id, req.qty)


# ── Query Endpoints ──────────────────────────────


@app.get("/inventory/reservations/{reservation_id}")
async def query_reservation(reservation_id: str):
    async with async_session() as session:
        reservation = await queries.get_reservation(session, reservation_id)
        if not reservation:
            raise NotFound("Reservation not found")
        return reservation


@app.get("/inventory/{product_id}")
async def query_stock(product_id: int):
    async with async_session() as session:
        return await queries.get_stock(session, product_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
