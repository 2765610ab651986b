# tests/conftest.py
"""
Every service runs in-process: the apps talk to each other through
httpx.ASGITransport, share one SQLite file (each service keeps its own
tables) and publish domain events to a mocked redis client.
"""

import os
import tempfile
from dataclasses import dataclass
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

# ============================================================
# Environment must be in place before the service mains are imported
# ============================================================
_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/storefront.db"
os.environ["INVENTORY_ADMIN_TOKEN"] = "test-admin-token"
os.environ["CHARGE_BACKOFF_SECONDS"] = "0"

from storefront.common.notify import NotificationClient  # noqa: E402
from storefront.inventory import main as inventory_main  # noqa: E402
from storefront.notifications import main as notifications_main  # noqa: E402
from storefront.orders import main as orders_main  # noqa: E402
from storefront.orders.clients import (  # noqa: E402
    HttpInventoryClient,
    HttpPaymentClient,
    HttpShippingClient,
    SagaGateways,
)
from storefront.payments import main as payments_main  # noqa: E402
from storefront.shipping import main as shipping_main  # noqa: E402
from storefront.shipping.clients import HttpOrderStatusClient, StageCallbacks  # noqa: E402

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}

SERVICE_MAINS = {
    "inventory": inventory_main,
    "payments": payments_main,
    "shipping": shipping_main,
    "notifications": notifications_main,
    "orders": orders_main,
}


def user_headers(user_id: int, email: str | None = None) -> dict:
    headers = {"X-User-Id": str(user_id)}
    if email:
        headers["X-User-Email"] = email
    return headers


@dataclass
class Services:
    inventory: httpx.AsyncClient
    payments: httpx.AsyncClient
    shipping: httpx.AsyncClient
    notifications: httpx.AsyncClient
    orders: httpx.AsyncClient
    gateways: SagaGateways
    redis: MagicMock

    async def add_product(self, price: str = "10.00", stock: int | None = None, seller: int = 99) -> int:
        resp = await self.orders.post(
            "/products", json={"name": "Widget", "price": price}, headers=user_headers(seller)
        )
        assert resp.status_code == 201, resp.text
        product_id = resp.json()["id"]
        if stock is not None:
            await self.set_stock(product_id, stock)
        return product_id

    async def set_stock(self, product_id: int, qty: int) -> None:
        resp = await self.inventory.post(
            "/inventory/set", json={"productId": product_id, "qty": qty}, headers=ADMIN_HEADERS
        )
        assert resp.status_code == 200, resp.text

    async def stock_of(self, product_id: int) -> int:
        resp = await self.inventory.get(f"/inventory/{product_id}")
        return resp.json()["qty"]

    async def create_order(self, user_id: int, product_id: int, qty: int) -> dict:
        resp = await self.orders.post(
            "/orders", json={"productId": product_id, "qty": qty}, headers=user_headers(user_id)
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def notifications_for(self, recipient: str) -> list[dict]:
        resp = await self.notifications.get(f"/notify/user/{recipient}")
        return resp.json()


# =========================================
# Fresh tables for every test
# =========================================
@pytest_asyncio.fixture
async def _db_reset() -> AsyncGenerator[None, None]:
    for module in SERVICE_MAINS.values():
        async with module.engine.begin() as conn:
            await conn.run_sync(module.metadata.drop_all)
            await conn.run_sync(module.metadata.create_all)
    yield
    for module in SERVICE_MAINS.values():
        await module.engine.dispose()


@pytest.fixture
def fake_redis() -> MagicMock:
    """Redis client double; published messages are kept in publish.await_args_list"""
    client = MagicMock()
    client.publish = AsyncMock(return_value=0)
    client.aclose = AsyncMock()
    return client


@pytest_asyncio.fixture
async def services(_db_reset, monkeypatch, fake_redis) -> AsyncGenerator[Services, None]:
    clients = {
        name: httpx.AsyncClient(
            transport=httpx.ASGITransport(app=module.app), base_url=f"http://{name}"
        )
        for name, module in SERVICE_MAINS.items()
    }
    for name in ("inventory", "payments", "shipping", "orders"):
        monkeypatch.setattr(SERVICE_MAINS[name], "redis_pool", fake_redis)

    notifier = NotificationClient(clients["notifications"], "http://notifications")
    gateways = SagaGateways(
        inventory=HttpInventoryClient(clients["inventory"], "http://inventory"),
        payments=HttpPaymentClient(clients["payments"], "http://payments"),
        shipping=HttpShippingClient(clients["shipping"], "http://shipping"),
        notifier=notifier,
    )
    monkeypatch.setattr(orders_main, "gateways", gateways)
    monkeypatch.setattr(
        shipping_main,
        "callbacks",
        StageCallbacks(orders=HttpOrderStatusClient(clients["orders"], "http://orders"), notifier=notifier),
    )

    yield Services(gateways=gateways, redis=fake_redis, **clients)

    orders_main.app.dependency_overrides.clear()
    for client in clients.values():
        await client.aclose()
