"""
Order Service — order aggregate (status state machine)

Status transitions:
    created_unpaid → paying            (pay claim)
    failed         → paying            (pay retry)
    created_unpaid → failed            (cancel)
    paying         → failed            (reservation or payment failed)
    paying         → created_paid      (payment captured)
    created_paid   → processing → collected → in_transit → delivered_to_pickup
                                       (shipping pushes, forward only)
    delivered_to_pickup → received     (user acknowledges receipt)
"""

from storefront.common.errors import Conflict

CREATED_UNPAID = "created_unpaid"
PAYING = "paying"
CREATED_PAID = "created_paid"
FAILED = "failed"
PROCESSING = "processing"
COLLECTED = "collected"
IN_TRANSIT = "in_transit"
DELIVERED_TO_PICKUP = "delivered_to_pickup"
RECEIVED = "received"

SHIPPING_STAGES = (PROCESSING, COLLECTED, IN_TRANSIT, DELIVERED_TO_PICKUP)
PAYABLE = (CREATED_UNPAID, FAILED)

# paid part of the lifecycle, in order; shipping pushes only move forward on it
_FULFILMENT_PATH = (CREATED_PAID,) + SHIPPING_STAGES + (RECEIVED,)


class OrderAggregate:
    def __init__(
        self,
        id: int,
        user_id: int,
        product_id: int,
        qty: int,
        status: str,
        tracking_id: str | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.product_id = product_id
        self.qty = qty
        self.status = status
        self.tracking_id = tracking_id

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE

    def accepts_stage(self, stage: str) -> bool:
        """True when `stage` is a shipping stage ahead of the current status."""
        if stage not in SHIPPING_STAGES or self.status not in _FULFILMENT_PATH:
            return False
        return _FULFILMENT_PATH.index(stage) > _FULFILMENT_PATH.index(self.status)

    def ensure_cancellable(self) -> None:
        if self.status != CREATED_UNPAID:
            raise Conflict("Cannot cancel")

    def ensure_receivable(self) -> None:
        if self.status != DELIVERED_TO_PICKUP:
            raise Conflict("Not ready to receive")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "productId": self.product_id,
            "qty": self.qty,
            "status": self.status,
            "trackingId": self.tracking_id,
        }

    @classmethod
    def from_row(cls, row) -> "OrderAggregate":
        return cls(row.id, row.user_id, row.product_id, row.qty, row.status, row.tracking_id)
