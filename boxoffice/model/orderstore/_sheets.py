# model/orderstore/_sheets.py
"""
Order rows in a Google Sheets spreadsheet.

- row 1 is the header (ROW_FIELDS); written at connect() when the sheet is
  empty, otherwise columns are looked up by header name
- one row per order, located by scanning the order_reference column
- values are written RAW, so every cell round-trips as a string
- 429, 5xx and transport failures are retried with exponential backoff

The values API has no conditional write. update_if() is read-then-write, so
two deliveries racing on the same order can both pass the status check; the
second write then sets the same terminal fields again.
"""
from __future__ import annotations
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2 import service_account
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ...errors import ConflictError, NotFoundError, StoreError
from ...helpers import now_ts, to_iso
from ..order import ROW_FIELDS, Order, OrderStatus, normalize_fields
from ._base import OrderStore

logger = structlog.get_logger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"
TOKEN_URI = "https://oauth2.googleapis.com/token"

TokenProvider = Callable[[], Awaitable[str]]

RETRY_STATUSES = {429, 500, 502, 503, 504}


class SheetsUnavailable(Exception):
    """HTTP 429/5xx or a transport failure; retried by _request()."""


class ServiceAccountTokens:
    """Bearer tokens for a service account, refreshed when expired."""

    def __init__(self, credentials: service_account.Credentials) -> None:
        self.credentials = credentials
        self._lock = asyncio.Lock()

    @classmethod
    def from_key(cls, key: str, email: Optional[str] = None):
        # either the full JSON key file or just the PEM private key
        try:
            info = json.loads(key)
        except json.JSONDecodeError:
            info = None
        if not isinstance(info, dict):
            info = {"private_key": key.replace("\\n", "\n")}
        if email:
            info.setdefault("client_email", email)
        info.setdefault("token_uri", TOKEN_URI)
        if not info.get("private_key") or not info.get("client_email"):
            raise RuntimeError(
                "GOOGLE_SERVICE_ACCOUNT_KEY needs a private_key and a "
                "client email"
            )
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=[SHEETS_SCOPE]
        )
        return cls(credentials)

    async def __call__(self) -> str:
        async with self._lock:
            if not self.credentials.valid:
                # google-auth refresh is blocking
                await asyncio.to_thread(self.credentials.refresh,
                                        GoogleRequest())
        return self.credentials.token


def column_letter(n: int) -> str:
    """1 -> A, 26 -> Z, 27 -> AA"""
    letters = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


class SheetsOrderStore(OrderStore):
    backend = "sheets"

    def __init__(
        self,
        *,
        spreadsheet_id: str,
        tokens: TokenProvider,
        sheet_name: str = "Sheet1",
        http: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 4,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self.tokens = tokens
        self.http = http
        self._owns_http = http is None
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.header: List[str] = list(ROW_FIELDS)

    # ---
    # lifecycle
    # ---
    async def connect(self) -> None:
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=10.0)
        values = await self._get_values("1:1")
        if values and values[0]:
            self.header = [str(h) for h in values[0]]
            absent = [f for f in ROW_FIELDS if f not in self.header]
            if absent:
                raise StoreError(
                    f"sheet {self.sheet_name!r} header lacks columns: "
                    + ", ".join(absent)
                )
        else:
            self.header = list(ROW_FIELDS)
            await self._put_values(
                f"A1:{column_letter(len(self.header))}1", [self.header]
            )
            logger.info("sheet_header_written", sheet=self.sheet_name)

    async def close(self) -> None:
        if self.http is not None and self._owns_http:
            await self.http.aclose()
        self.http = None

    async def ping(self) -> None:
        await self._request("GET", self._url(""), params={
            "fields": "properties.title",
        })

    # ---
    # contract
    # ---
    async def create(self, order: Order) -> None:
        found = await self._find_row(order.order_reference)
        if found is not None:
            raise ConflictError(
                "order reference already exists",
                order_reference=order.order_reference,
            )
        row = order.to_row()
        await self._request(
            "POST",
            self._url(f"/values/{self._range('A:A')}:append"),
            params={
                "valueInputOption": "RAW",
                "insertDataOption": "INSERT_ROWS",
            },
            json={"values": [[row.get(h, "") for h in self.header]]},
        )

    async def find_by_reference(self, ref: str) -> Optional[Order]:
        found = await self._find_row(ref)
        if found is None:
            return None
        _, row = found
        return Order.from_row(row)

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
    ) -> Optional[Order]:
        found = await self._find_row(ref)
        if found is None:
            raise NotFoundError("order not found", order_reference=ref)
        row_number, row = found
        if (expected_status is not None
                and row.get("status") != expected_status.value):
            return None

        changes = normalize_fields(fields)
        changes["updated_at"] = to_iso(now_ts())
        row.update({k: str(v) for k, v in changes.items()})
        last = column_letter(len(self.header))
        await self._put_values(
            f"A{row_number}:{last}{row_number}",
            [[row.get(h, "") for h in self.header]],
        )
        return Order.from_row(row)

    # ---
    # sheet access
    # ---
    async def _find_row(self, ref: str) -> Optional[Tuple[int, Dict[str, str]]]:
        values = await self._get_values("A:" + column_letter(len(self.header)))
        if not values:
            return None
        header = [str(h) for h in values[0]]
        try:
            ref_col = header.index("order_reference")
        except ValueError:
            raise StoreError("sheet has no order_reference column") from None

        for offset, cells in enumerate(values[1:]):
            if len(cells) > ref_col and cells[ref_col] == ref:
                # the API drops trailing empty cells
                padded = list(cells) + [""] * (len(header) - len(cells))
                return offset + 2, dict(zip(header, map(str, padded)))
        return None

    async def _get_values(self, a1: str) -> List[List[Any]]:
        data = await self._request("GET", self._url(f"/values/{self._range(a1)}"))
        return data.get("values", [])

    async def _put_values(self, a1: str, values: List[List[Any]]) -> None:
        await self._request(
            "PUT",
            self._url(f"/values/{self._range(a1)}"),
            params={"valueInputOption": "RAW"},
            json={"values": values},
        )

    def _range(self, a1: str) -> str:
        return quote(f"'{self.sheet_name}'!{a1}", safe="")

    def _url(self, path: str) -> str:
        return f"{SHEETS_API}/{self.spreadsheet_id}{path}"

    async def _request(self, method: str, url: str, **kw) -> Dict[str, Any]:
        if self.http is None:
            raise StoreError("sheets store used before connect()")
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=8),
            retry=retry_if_exception_type(SheetsUnavailable),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            return await retrying(self._send, method, url, **kw)
        except SheetsUnavailable as e:
            raise StoreError(f"sheets API unavailable: {e}") from e

    async def _send(self, method: str, url: str, **kw) -> Dict[str, Any]:
        try:
            token = await self.tokens()
        except GoogleAuthError as e:
            raise StoreError(f"sheets credentials rejected: {e}") from e
        try:
            resp = await self.http.request(
                method, url,
                headers={"Authorization": f"Bearer {token}"},
                **kw,
            )
        except httpx.TransportError as e:
            raise SheetsUnavailable(f"{type(e).__name__}: {e}") from e

        if resp.status_code in RETRY_STATUSES:
            raise SheetsUnavailable(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise StoreError(
                f"sheets API answered {resp.status_code}: {resp.text[:200]}"
            )
        return resp.json() if resp.content else {}


def _log_retry(state: RetryCallState) -> None:
    logger.warning("sheets_request_retry", attempt=state.attempt_number,
                   error=str(state.outcome.exception()))
