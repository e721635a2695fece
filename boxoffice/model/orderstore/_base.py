from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..order import Order, OrderStatus


class OrderStore(ABC):
    """Single source of truth for order records, keyed by order reference.

    Every call is a remote call on the real backends: expect latency and
    transient failures (raised as StoreError). No call is transactional with
    any other call.
    """
    backend = "abstract"

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> None:
        return None

    @abstractmethod
    async def create(self, order: Order) -> None:
        """Persist a new order; ConflictError if the reference exists."""

    @abstractmethod
    async def find_by_reference(self, ref: str) -> Optional[Order]:
        """The order, or None. Never raises on absence."""

    @abstractmethod
    async def update(self, ref: str, fields: Dict[str, Any]) -> Order:
        """Merge flat row fields, refresh updated_at; NotFoundError if absent."""

    @abstractmethod
    async def update_if(
        self, ref: str, expected_status: OrderStatus, fields: Dict[str, Any]
    ) -> bool:
        """Like update, but only while the stored status equals
        expected_status. Returns False (and writes nothing) otherwise."""
