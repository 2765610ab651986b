"""
Order Service — gateways to the leaf services

The saga depends on these capabilities, not on HTTP. The Http* classes are
the production implementations; anything with the same methods (an
in-process transport, a test double) can be substituted.

Error mapping for every call:
  transport error / timeout / unexpected status  → UpstreamFailure
  unreadable or incomplete body                  → UpstreamFailure
  business refusal                               → InsufficientStock / Conflict / NotFound
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from storefront.common.errors import Conflict, InsufficientStock, NotFound, UpstreamFailure
from storefront.common.notify import Notifier


class InventoryGateway(Protocol):
    async def reserve(self, reservation_id: str, product_id: int, qty: int) -> None: ...

    async def commit(self, reservation_id: str) -> None: ...

    async def release(self, reservation_id: str) -> None: ...


class PaymentGateway(Protocol):
    async def charge(self, payment_id: str, amount: Decimal, currency: str, order_id: int) -> bool:
        """True when captured, False when declined."""
        ...

    async def refund(self, payment_id: str, reason: str) -> None: ...


class ShippingGateway(Protocol):
    async def fulfill(self, order_id: int, recipient: str) -> str: ...


@dataclass
class SagaGateways:
    inventory: InventoryGateway
    payments: PaymentGateway
    shipping: ShippingGateway
    notifier: Notifier


async def _post(client: httpx.AsyncClient, url: str, body: dict) -> httpx.Response:
    try:
        return await client.post(url, json=body)
    except httpx.HTTPError as e:
        raise UpstreamFailure(f"POST {url} failed: {e!r}") from e


def _unexpected(resp: httpx.Response) -> UpstreamFailure:
    return UpstreamFailure(f"{resp.request.method} {resp.request.url} answered {resp.status_code}")


def _error_of(resp: httpx.Response) -> tuple[str, str | None]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text, None
    if not isinstance(body, dict):
        return resp.text, None
    return body.get("error", resp.text), body.get("code")


def _field(resp: httpx.Response, key: str):
    """`key` of a JSON object body; a body that does not have it is an upstream fault."""
    try:
        return resp.json()[key]
    except (ValueError, KeyError, TypeError) as e:
        raise UpstreamFailure(
            f"{resp.request.method} {resp.request.url} answered without {key}: {e!r}"
        ) from e


class HttpInventoryClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url

    async def reserve(self, reservation_id: str, product_id: int, qty: int) -> None:
        resp = await _post(
            self.client,
            f"{self.base_url}/inventory/reserve",
            {"reservationId": reservation_id, "productId": product_id, "qty": qty},
        )
        if resp.status_code == 409:
            message, code = _error_of(resp)
            if code == InsufficientStock.code:
                raise InsufficientStock(message)
            raise Conflict(message)
        if resp.status_code != 200:
            raise _unexpected(resp)

    async def commit(self, reservation_id: str) -> None:
        await self._settle("commit", reservation_id)

    async def release(self, reservation_id: str) -> None:
        await self._settle("release", reservation_id)

    async def _settle(self, action: str, reservation_id: str) -> None:
        resp = await _post(
            self.client,
            f"{self.base_url}/inventory/{action}",
            {"reservationId": reservation_id},
        )
        if resp.status_code == 404:
            raise NotFound("Reservation not found")
        if resp.status_code != 200:
            raise _unexpected(resp)


class HttpPaymentClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url

    async def charge(self, payment_id: str, amount: Decimal, currency: str, order_id: int) -> bool:
        resp = await _post(
            self.client,
            f"{self.base_url}/payments/charge",
            {
                "paymentId": payment_id,
                "amount": float(amount),
                "currency": currency,
                "orderId": order_id,
            },
        )
        if resp.status_code == 200:
            return True
        if resp.status_code == 402:
            return False
        raise _unexpected(resp)

    async def refund(self, payment_id: str, reason: str) -> None:
        resp = await _post(
            self.client,
            f"{self.base_url}/payments/refund",
            {"paymentId": payment_id, "reason": reason},
        )
        if resp.status_code == 404:
            raise NotFound("Payment not found")
        if resp.status_code == 409:
            raise Conflict("Payment cannot be refunded")
        if resp.status_code != 200:
            raise _unexpected(resp)


class HttpShippingClient:
    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url

    async def fulfill(self, order_id: int, recipient: str) -> str:
        resp = await _post(
            self.client,
            f"{self.base_url}/shipping/fulfill",
            {"orderId": order_id, "recipient": recipient},
        )
        if resp.status_code != 200:
            raise _unexpected(resp)
        return _field(resp, "trackingId")
