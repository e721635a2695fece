# model/orderstore/_redis.py
from __future__ import annotations
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ...errors import ConflictError, NotFoundError, StoreError
from ...helpers import now_ts
from ..order import Order, OrderStatus, normalize_fields
from ._base import OrderStore


# ---- keys
def k_order(ref: str) -> str:
    return f"order:{ref}"


def k_idx_created() -> str:
    return "idx:orders:created"


def k_idx_status(s: str) -> str:
    return f"idx:orders:status:{s}"


def _mapping(order: Order) -> Dict[str, str]:
    # mapping values should be strings for decode_responses=True
    row = order.to_row()
    row["created_at"] = repr(order.created_at)
    row["updated_at"] = repr(order.updated_at)
    return row


class RedisOrderStore(OrderStore):
    backend = "redis"

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def close(self) -> None:
        await self.r.aclose()

    async def ping(self) -> None:
        try:
            await self.r.ping()
        except RedisError as e:
            raise StoreError(f"redis unreachable: {e}") from e

    async def create(self, order: Order) -> None:
        key = k_order(order.order_reference)
        try:
            async with self.r.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.exists(key):
                    raise ConflictError(
                        "order reference already exists",
                        order_reference=order.order_reference,
                    )
                pipe.multi()
                pipe.hset(key, mapping=_mapping(order))
                pipe.zadd(k_idx_created(),
                          {order.order_reference: order.created_at})
                pipe.sadd(k_idx_status(order.status.value),
                          order.order_reference)
                await pipe.execute()
        except WatchError:
            # someone wrote the same key between WATCH and EXEC
            raise ConflictError(
                "order reference already exists",
                order_reference=order.order_reference,
            ) from None
        except RedisError as e:
            raise StoreError(f"redis create failed: {e}",
                             order_reference=order.order_reference) from e

    async def find_by_reference(self, ref: str) -> Optional[Order]:
        try:
            h = await self.r.hgetall(k_order(ref))
        except RedisError as e:
            raise StoreError(f"redis read failed: {e}",
                             order_reference=ref) from e
        return Order.from_row(h) if h else None

    async def update(self, ref: str, fields: Dict[str, Any]) -> Order:
        return await self._update(ref, None, fields)

    async def update_if(
        self, ref: str, expected_status: OrderStatus, fields: Dict[str, Any]
    ) -> bool:
        return await self._update(ref, expected_status, fields) is not None

    async def _update(
        self,
        ref: str,
        expected_status: Optional[OrderStatus],
        fields: Dict[str, Any],
        attempts: int = 3,
    ) -> Optional[Order]:
        key = k_order(ref)
        changes = normalize_fields(fields)
        changes["updated_at"] = repr(now_ts())

        for _ in range(attempts):
            try:
                async with self.r.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    current = await pipe.hgetall(key)
                    if not current:
                        raise NotFoundError("order not found",
                                            order_reference=ref)
                    status = current.get("status", "")
                    if (expected_status is not None
                            and status != expected_status.value):
                        return None

                    pipe.multi()
                    pipe.hset(key, mapping={k: str(v) for k, v in changes.items()})
                    new_status = changes.get("status")
                    if new_status and new_status != status:
                        pipe.srem(k_idx_status(status), ref)
                        pipe.sadd(k_idx_status(new_status), ref)
                    await pipe.execute()
                current.update({k: str(v) for k, v in changes.items()})
                return Order.from_row(current)
            except WatchError:
                # concurrent writer; re-read and re-check the condition
                continue
            except RedisError as e:
                raise StoreError(f"redis update failed: {e}",
                                 order_reference=ref) from e
        raise StoreError("redis update kept conflicting", order_reference=ref)
