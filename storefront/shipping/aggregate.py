"""
Shipping Service — shipment aggregate (stage state machine)

Stages are linear, no branching:
    processing → collected → in_transit → delivered_to_pickup

delivered_to_pickup is terminal; advancing past it is a no-op, not an error.
"""

PROCESSING = "processing"
COLLECTED = "collected"
IN_TRANSIT = "in_transit"
DELIVERED_TO_PICKUP = "delivered_to_pickup"

STAGES = (PROCESSING, COLLECTED, IN_TRANSIT, DELIVERED_TO_PICKUP)


class ShipmentAggregate:
    def __init__(self, order_id: int, tracking_id: str, status: str = PROCESSING) -> None:
        if status not in STAGES:
            raise ValueError(f"Unknown shipment stage: {status}")
        self.order_id = order_id
        self.tracking_id = tracking_id
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return self.status == DELIVERED_TO_PICKUP

    def next_stage(self) -> str | None:
        if self.is_terminal:
            return None
        return STAGES[STAGES.index(self.status) + 1]

    def advance(self) -> str | None:
        """Move to the next stage; returns it, or None when already terminal."""
        nxt = self.next_stage()
        if nxt is not None:
            self.status = nxt
        return nxt

    @classmethod
    def from_row(cls, row) -> "ShipmentAggregate":
        return cls(row.order_id, row.tracking_id, row.status)
