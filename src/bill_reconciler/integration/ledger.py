from abc import ABC, abstractmethod
from datetime import date
from typing import Any

from bill_reconciler.integration.supabase import (
    ACCOUNTS_TABLE,
    BILLS_TABLE,
    TRANSACTION_COLUMNS,
    TRANSACTIONS_TABLE,
    SupabaseClient,
    date_between,
    eq,
    in_list,
)
from bill_reconciler.logger import get_logger

logger = get_logger(__name__)


class Ledger(ABC):
    """Read access to bills and bank transactions, plus the transaction's bill link.

    Returns raw rows; turning them into domain objects, and rejecting bad ones,
    is the caller's job.
    """

    @abstractmethod
    async def list_bills(self, user_id: str, *, active_only: bool = True) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def get_bill(self, user_id: str, bill_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def list_transactions(self, user_id: str, start: date, end: date) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def set_transaction_bill(self, transaction_id: str, bill_id: str | None) -> None:
        """Point a transaction at a bill, or clear the link with ``None``."""
        pass


class SupabaseLedger(Ledger):
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    async def list_bills(self, user_id: str, *, active_only: bool = True) -> list[dict[str, Any]]:
        params = [eq("user_id", user_id), ("order", "due_day.asc")]
        if active_only:
            params.append(eq("is_active", "true"))
        return await self.client.select(BILLS_TABLE, params)

    async def get_bill(self, user_id: str, bill_id: str) -> dict[str, Any] | None:
        rows = await self.client.select(BILLS_TABLE, [eq("user_id", user_id), eq("id", bill_id)])
        return rows[0] if rows else None

    async def list_account_ids(self, user_id: str) -> list[str]:
        rows = await self.client.select(ACCOUNTS_TABLE, [eq("user_id", user_id)], columns="id")
        return [str(row["id"]) for row in rows if row.get("id")]

    async def list_transactions(self, user_id: str, start: date, end: date) -> list[dict[str, Any]]:
        account_ids = await self.list_account_ids(user_id)
        if not account_ids:
            logger.info("[LEDGER] User %s has no bank accounts; no transactions to match.", user_id)
            return []
        params = [
            in_list("account_id", account_ids),
            *date_between("transaction_date", start, end),
            eq("type", "expense"),
        ]
        return await self.client.select(TRANSACTIONS_TABLE, params, columns=TRANSACTION_COLUMNS)

    async def set_transaction_bill(self, transaction_id: str, bill_id: str | None) -> None:
        await self.client.update(TRANSACTIONS_TABLE, {"bill_id": bill_id}, [eq("id", transaction_id)])
