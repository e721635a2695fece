from __future__ import annotations
from typing import Any, Callable, Dict, Optional

from ...errors import ConflictError, NotFoundError
from ...helpers import now_ts
from ..order import Order, OrderStatus, normalize_fields
from ._base import OrderStore


class MemoryOrderStore(OrderStore):
    """In-process store for development and tests.

    Each call runs without awaiting, so it is atomic on the event loop.
    """
    backend = "memory"

    def __init__(self, clock: Callable[[], float] = now_ts) -> None:
        self.orders: Dict[str, Order] = {}
        self.clock = clock
        self.writes = 0

    async def create(self, order: Order) -> None:
        if order.order_reference in self.orders:
            raise ConflictError(
                "order reference already exists",
                order_reference=order.order_reference,
            )
        self.orders[order.order_reference] = order
        self.writes += 1

    async def find_by_reference(self, ref: str) -> Optional[Order]:
        return self.orders.get(ref)

    async def update(self, ref: str, fields: Dict[str, Any]) -> Order:
        order = self.orders.get(ref)
        if order is None:
            raise NotFoundError("order not found", order_reference=ref)
        return self._apply(order, fields)

    async def update_if(
        self, ref: str, expected_status: OrderStatus, fields: Dict[str, Any]
    ) -> bool:
        order = self.orders.get(ref)
        if order is None:
            raise NotFoundError("order not found", order_reference=ref)
        if order.status is not expected_status:
            return False
        self._apply(order, fields)
        return True

    def _apply(self, order: Order, fields: Dict[str, Any]) -> Order:
        changes = normalize_fields(fields)
        changes["updated_at"] = self.clock()
        updated = order.with_fields(changes)
        self.orders[order.order_reference] = updated
        self.writes += 1
        return updated
