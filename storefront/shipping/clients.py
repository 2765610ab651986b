"""
Shipping Service — outbound clients

Stage changes are pushed to the Order Ledger and announced to the user.
Both are independent side effects of an already committed transition.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from storefront.common.notify import Notifier

logger = logging.getLogger(__name__)


class OrderStatusSink(Protocol):
    async def push_status(self, order_id: int, status: str) -> None: ...


class HttpOrderStatusClient:
    """OrderStatusSink backed by `POST /orders/{id}/status`."""

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url

    async def push_status(self, order_id: int, status: str) -> None:
        resp = await self.client.post(
            f"{self.base_url}/orders/{order_id}/status",
            json={"status": status},
        )
        resp.raise_for_status()


@dataclass
class StageCallbacks:
    orders: OrderStatusSink
    notifier: Notifier
