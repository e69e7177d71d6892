import asyncio
import os
from datetime import date
from typing import Any

import httpx

from bill_reconciler.errors import StorageError
from bill_reconciler.logger import get_logger

logger = get_logger(__name__)

Params = list[tuple[str, str]]

DEFAULT_TIMEOUT_SECONDS = 30.0

BILLS_TABLE = "bills"
OVERRIDES_TABLE = "bill_occurrences"
TRANSACTIONS_TABLE = "transactions"
ACCOUNTS_TABLE = "bank_accounts"

TRANSACTION_COLUMNS = (
    "id,amount,merchant,description,transaction_date,account_id,bill_id,is_pending"
)


def eq(column: str, value: Any) -> tuple[str, str]:
    return column, f"eq.{value}"


def in_list(column: str, values: list[str]) -> tuple[str, str]:
    quoted = ",".join(f'"{value}"' for value in values)
    return column, f"in.({quoted})"


def date_between(column: str, start: date, end: date) -> Params:
    return [(column, f"gte.{start.isoformat()}"), (column, f"lte.{end.isoformat()}")]


def _is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in (408, 429)


class SupabaseClient:
    """Thin async client for the hosted database's REST interface."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = (base_url or os.getenv("SUPABASE_URL") or "").rstrip("/") or None
        self.api_key = api_key or os.getenv("SUPABASE_KEY")
        self.timeout = timeout
        self.headers = self._build_headers()
        self._client = client
        self._client_lock = asyncio.Lock()

    def _build_headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key or "",
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def refresh(self, base_url: str | None = None, api_key: str | None = None) -> None:
        base_value = base_url if base_url is not None else os.getenv("SUPABASE_URL")
        key_value = api_key if api_key is not None else os.getenv("SUPABASE_KEY")
        self.base_url = (base_value or "").rstrip("/") or None
        self.api_key = key_value or None
        self.headers = self._build_headers()

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            # Another task may have created it while we waited
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Params | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> list[dict[str, Any]]:
        if not self.configured:
            raise StorageError("Database credentials missing (SUPABASE_URL / SUPABASE_KEY).", retryable=False)

        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer

        client = await self._get_client()
        try:
            response = await client.request(
                method,
                self._table_url(table),
                headers=headers,
                params=params,
                json=json,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("[STORE] %s %s failed with HTTP %s.", method, table, status_code)
            raise StorageError(
                f"{method} {table} failed with HTTP {status_code}",
                retryable=_is_retryable_status(status_code),
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("[STORE] %s %s failed: %s", method, table, exc)
            raise StorageError(f"{method} {table} failed: {exc}") from exc

        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return data
        return [data] if isinstance(data, dict) else []

    async def select(self, table: str, params: Params, columns: str = "*") -> list[dict[str, Any]]:
        return await self._request("GET", table, params=[("select", columns), *params])

    async def upsert(self, table: str, row: dict[str, Any], on_conflict: str) -> list[dict[str, Any]]:
        return await self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            json=row,
            prefer="resolution=merge-duplicates,return=representation",
        )

    async def update(self, table: str, values: dict[str, Any], params: Params) -> list[dict[str, Any]]:
        return await self._request(
            "PATCH",
            table,
            params=params,
            json=values,
            prefer="return=representation",
        )

    async def delete(self, table: str, params: Params) -> list[dict[str, Any]]:
        return await self._request(
            "DELETE",
            table,
            params=params,
            prefer="return=representation",
        )
