"""
Notifications Service — FastAPI entry point

Notification sink for the saga and the shipment tracker.
"""

import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from pydantic import BaseModel, Field

from storefront.common.db import make_engine, make_session_factory
from storefront.common.errors import install_error_handlers
from storefront.common.logging import setup_logging

from . import commands, queries
from .tables import metadata

DATABASE_URL = os.environ["DATABASE_URL"]

engine = make_engine(DATABASE_URL)
async_session = make_session_factory(engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    await engine.dispose()


app = FastAPI(title="Notifications Service", lifespan=lifespan)
install_error_handlers(app)


class NotifyRequest(BaseModel):
    type: str = Field(min_length=1)
    to: str = Field(min_length=1)
    payload: Any = None


@app.post("/notify")
async def cmd_notify(req: NotifyRequest):
    async with async_session() as session:
        return await commands.record(session, req.type, req.to, req.payload)


@app.get("/notify/logs")
async def query_logs():
    async with async_session() as session:
        return await queries.latest(session)


@app.get("/notify/user/{recipient}")
async def query_for_recipient(recipient: str):
    async with async_session() as session:
        return await queries.for_recipient(session, recipient)


@app.delete("/notify/{notification_id}")
async def cmd_delete(notification_id: int):
    async with async_session() as session:
        return await commands.remove(session, notification_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notifications-service"}
