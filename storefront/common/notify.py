"""
Common — notification sink client

Used by the order saga and the shipment tracker. Notifications are
fire-and-forget: a failed delivery is logged and never interrupts the caller.
"""

import logging
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, type_: str, to: str, payload: dict) -> None: ...


class NotificationClient:
    """Notifier backed by `POST /notify` of the notifications service."""

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url

    async def send(self, type_: str, to: str, payload: dict) -> None:
        try:
            resp = await self.client.post(
                f"{self.base_url}/notify",
                json={"type": type_, "to": to, "payload": payload},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Notification %s to %s not delivered: %s", type_, to, e)
