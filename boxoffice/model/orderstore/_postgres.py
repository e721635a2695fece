from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from ...errors import ConflictError, NotFoundError, StoreError
from ...helpers import now_ts
from ...infra.sql import Database
from ..order import ROW_FIELDS, Order, OrderStatus, normalize_fields
from ._base import OrderStore


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_ORDERS = r"""
CREATE TABLE IF NOT EXISTS orders (
  order_reference    TEXT PRIMARY KEY,
  product_type       TEXT NOT NULL,
  customer_name      TEXT NOT NULL,
  customer_email     TEXT NOT NULL,
  customer_phone     TEXT NOT NULL DEFAULT '',
  quantity           INTEGER NOT NULL CHECK (quantity > 0),
  amount_total       INTEGER NOT NULL,     -- pence
  currency           TEXT NOT NULL,
  payment_session_id TEXT NOT NULL,
  payment_intent_id  TEXT NOT NULL DEFAULT '',
  status             TEXT NOT NULL CHECK (status IN ('pending','completed','failed')),
  shipping_address   TEXT NOT NULL DEFAULT '',
  shipping_city      TEXT NOT NULL DEFAULT '',
  shipping_postcode  TEXT NOT NULL DEFAULT '',
  created_at         DOUBLE PRECISION NOT NULL,
  updated_at         DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_ORDERS_STATUS = r"""
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);
"""

SQL_INSERT_ORDER = text(
    "INSERT INTO orders (" + ", ".join(ROW_FIELDS) + ") VALUES ("
    + ", ".join(f":{f}" for f in ROW_FIELDS) + ")"
)

SQL_SELECT_ORDER = text(
    "SELECT " + ", ".join(ROW_FIELDS)
    + " FROM orders WHERE order_reference = :ref"
)

INT_COLUMNS = ("quantity", "amount_total")


def _params(order: Order) -> Dict[str, Any]:
    row: Dict[str, Any] = order.to_row()
    for col in INT_COLUMNS:
        row[col] = int(row[col])
    row["created_at"] = order.created_at
    row["updated_at"] = order.updated_at
    return row


class SqlOrderStore(OrderStore):
    """orders table on PostgreSQL (asyncpg) or SQLite (aiosqlite)."""
    backend = "pg"

    def __init__(self, db: Database) -> None:
        self.db = db

    @classmethod
    def from_url(cls, database_url: str) -> "SqlOrderStore":
        return cls(Database.from_url(database_url))

    async def connect(self) -> None:
        try:
            async with self.db.begin() as conn:
                await create_schema(conn)
        except SQLAlchemyError as e:
            raise StoreError(f"schema setup failed: {e}") from e

    async def close(self) -> None:
        await self.db.dispose()

    async def ping(self) -> None:
        try:
            async with self.db.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StoreError(f"database unreachable: {e}") from e

    async def create(self, order: Order) -> None:
        try:
            async with self.db.begin() as conn:
                await conn.execute(SQL_INSERT_ORDER, _params(order))
        except IntegrityError:
            raise ConflictError(
                "order reference already exists",
                order_reference=order.order_reference,
            ) from None
        except SQLAlchemyError as e:
            raise StoreError(f"insert failed: {e}",
                             order_reference=order.order_reference) from e

    async def find_by_reference(self, ref: str) -> Optional[Order]:
        try:
            async with self.db.connect() as conn:
                result = await conn.execute(SQL_SELECT_ORDER, {"ref": ref})
                row = result.mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"select failed: {e}", order_reference=ref) from e
        return Order.from_row(dict(row)) if row else None

    async def update(self, ref: str, fields: Dict[str, Any]) -> Order:
        try:
            async with self.db.begin() as conn:
                rowcount = await self._execute_update(conn, ref, None, fields)
                if rowcount == 0:
                    raise NotFoundError("order not found", order_reference=ref)
                result = await conn.execute(SQL_SELECT_ORDER, {"ref": ref})
                row = result.mappings().first()
        except SQLAlchemyError as e:
            raise StoreError(f"update failed: {e}", order_reference=ref) from e
        return Order.from_row(dict(row))

    async def update_if(
        self, ref: str, expected_status: OrderStatus, fields: Dict[str, Any]
    ) -> bool:
        try:
            async with self.db.begin() as conn:
                rowcount = await self._execute_update(
                    conn, ref, expected_status, fields
                )
                if rowcount:
                    return True
                # condition failed or row missing: tell them apart
                result = await conn.execute(
                    text("SELECT 1 FROM orders WHERE order_reference = :ref"),
                    {"ref": ref},
                )
                if result.first() is None:
                    raise NotFoundError("order not found", order_reference=ref)
                return False
        except SQLAlchemyError as e:
            raise StoreError(f"update failed: {e}", order_reference=ref) from e

    async def _execute_update(
        self,
        conn: AsyncConnection,
        ref: str,
        expected_status: Optional[OrderStatus],
        fields: Dict[str, Any],
    ) -> int:
        changes = normalize_fields(fields)
        for col in INT_COLUMNS:
            if col in changes:
                changes[col] = int(changes[col])
        changes["updated_at"] = now_ts()

        # column names come from ROW_FIELDS via normalize_fields, never from
        # the caller verbatim
        assignments = ", ".join(f"{col} = :set_{col}" for col in changes)
        params = {f"set_{col}": value for col, value in changes.items()}
        params["ref"] = ref
        sql = f"UPDATE orders SET {assignments} WHERE order_reference = :ref"
        if expected_status is not None:
            sql += " AND status = :expected"
            params["expected"] = expected_status.value
        result = await conn.execute(text(sql), params)
        return result.rowcount


async def create_schema(conn: AsyncConnection) -> None:
    await conn.execute(text(SQL_CREATE_ORDERS))
    await conn.execute(text(SQL_CREATE_IDX_ORDERS_STATUS))
