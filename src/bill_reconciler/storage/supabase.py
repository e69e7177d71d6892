from datetime import date

from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.domain.records import override_to_row, parse_override_row, parse_rows
from bill_reconciler.integration.supabase import (
    OVERRIDES_TABLE,
    SupabaseClient,
    date_between,
    eq,
)
from bill_reconciler.models import OccurrenceOverride
from bill_reconciler.storage.base import OverrideStore

ON_CONFLICT = "bill_id,due_date"


def _key_filters(user_id: str, key: OccurrenceKey) -> list[tuple[str, str]]:
    return [
        eq("user_id", user_id),
        eq("bill_id", key.bill_id),
        eq("due_date", key.due_date.isoformat()),
    ]


class SupabaseOverrideStore(OverrideStore):
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    async def list_range(self, user_id: str, start: date, end: date) -> list[OccurrenceOverride]:
        rows = await self.client.select(
            OVERRIDES_TABLE,
            [eq("user_id", user_id), *date_between("due_date", start, end)],
        )
        return parse_rows(rows, parse_override_row)

    async def get(self, user_id: str, key: OccurrenceKey) -> OccurrenceOverride | None:
        rows = await self.client.select(OVERRIDES_TABLE, _key_filters(user_id, key))
        overrides = parse_rows(rows, parse_override_row)
        return overrides[0] if overrides else None

    async def find_by_transaction(self, user_id: str, transaction_id: str) -> OccurrenceOverride | None:
        rows = await self.client.select(
            OVERRIDES_TABLE,
            [eq("user_id", user_id), eq("paid_transaction_id", transaction_id)],
        )
        overrides = parse_rows(rows, parse_override_row)
        return overrides[0] if overrides else None

    async def upsert(self, override: OccurrenceOverride) -> OccurrenceOverride:
        rows = await self.client.upsert(OVERRIDES_TABLE, override_to_row(override), ON_CONFLICT)
        stored = parse_rows(rows, parse_override_row)
        return stored[0] if stored else override

    async def delete(self, user_id: str, key: OccurrenceKey) -> bool:
        rows = await self.client.delete(OVERRIDES_TABLE, _key_filters(user_id, key))
        return bool(rows)
