"""
Payments Service — FastAPI entry point

Payment Processor: deterministic charge, refund, payment queries.
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import Field

from storefront.common.db import make_engine, make_session_factory
from storefront.common.errors import NotFound, install_error_handlers
from storefront.common.logging import setup_logging
from storefront.common.schemas import CamelModel

from . import commands, queries
from .tables import metadata

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

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


app = FastAPI(title="Payments Service", lifespan=lifespan)
install_error_handlers(app)


# ── Request Models ───────────────────────────────


class ChargeRequest(CamelModel):
    payment_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=1)
    order_id: int | None = None


class RefundRequest(CamelModel):
    payment_id: str = Field(min_length=1)
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


# ── Command Endpoints ────────────────────────────


@app.post("/payments/charge")
async def cmd_charge(req: ChargeRequest):
    """Charge (200 captured / 402 failed, or refunded on replay)"""
    async with async_session() as session:
        result = await commands.charge(
            session, redis_pool, req.payment_id, req.amount, req.currency, req.order_id
        )
    if result["status"] != commands.CAPTURED:
        return JSONResponse(status_code=402, content=result)
    return result


@app.post("/payments/refund")
async def cmd_refund(req: RefundRequest):
    async with async_session() as session:
        return await commands.refund(
            session, redis_pool, req.payment_id, req.amount, req.reason
        )


# ── Query Endpoints ──────────────────────────────


@app.get("/payments/order/{order_id}")
async def query_payments_for_order(order_id: int):
    async with async_session() as session:
        return await queries.list_by_order(session, order_id)


@app.get("/payments/{payment_id}")
async def query_payment(payment_id: str):
    async with async_session() as session:
        payment = await queries.get_payment(session, payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return payment


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payments-service"}
