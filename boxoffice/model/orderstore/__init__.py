# model/orderstore/__init__.py
from __future__ import annotations
from typing import TYPE_CHECKING, Optional

import httpx

from ._base import OrderStore
from ._memory import MemoryOrderStore

if TYPE_CHECKING:
    from ...config import Settings


# Factory keeps server.py simple and constructor-agnostic:
def new_store(settings: "Settings", *,
              http: Optional[httpx.AsyncClient] = None) -> OrderStore:
    backend = settings.store_backend
    if backend == "memory":
        return MemoryOrderStore()

    if backend == "redis":
        import redis.asyncio as redis
        from ._redis import RedisOrderStore

        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        return RedisOrderStore(r)

    if backend == "pg":
        if not settings.database_url:
            raise RuntimeError("OrderStore(pg) requires DATABASE_URL")
        from ._postgres import SqlOrderStore
        return SqlOrderStore.from_url(settings.database_url)

    if backend == "sheets":
        if not (settings.sheets_id and settings.google_service_account_key):
            raise RuntimeError(
                "OrderStore(sheets) requires GOOGLE_SHEETS_ID and "
                "GOOGLE_SERVICE_ACCOUNT_KEY"
            )
        from ._sheets import SheetsOrderStore, ServiceAccountTokens
        tokens = ServiceAccountTokens.from_key(
            settings.google_service_account_key,
            settings.google_service_account_email,
        )
        return SheetsOrderStore(
            spreadsheet_id=settings.sheets_id,
            sheet_name=settings.sheet_name,
            tokens=tokens,
            http=http,
        )

    raise RuntimeError(f"unknown ORDERSTORE_BACKEND {backend!r}")


__all__ = ["OrderStore", "MemoryOrderStore", "new_store"]
