import asyncio
from datetime import date

from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.models import OccurrenceOverride
from bill_reconciler.storage.base import OverrideStore


class MemoryOverrideStore(OverrideStore):
    def __init__(self, overrides: list[OccurrenceOverride] | None = None) -> None:
        self.records: dict[OccurrenceKey, OccurrenceOverride] = {}
        self._lock = asyncio.Lock()
        for override in overrides or []:
            self.records[override.key] = override

    async def list_range(self, user_id: str, start: date, end: date) -> list[OccurrenceOverride]:
        return sorted(
            (
                record
                for record in self.records.values()
                if record.user_id == user_id and start <= record.due_date <= end
            ),
            key=lambda record: record.key,
        )

    async def get(self, user_id: str, key: OccurrenceKey) -> OccurrenceOverride | None:
        record = self.records.get(key)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def find_by_transaction(self, user_id: str, transaction_id: str) -> OccurrenceOverride | None:
        return next(
            (
                record
                for _, record in sorted(self.records.items())
                if record.user_id == user_id and record.paid_transaction_id == transaction_id
            ),
            None,
        )

    async def upsert(self, override: OccurrenceOverride) -> OccurrenceOverride:
        async with self._lock:
            self.records[override.key] = override
            await self._persist()
        return override

    async def delete(self, user_id: str, key: OccurrenceKey) -> bool:
        async with self._lock:
            record = self.records.get(key)
            if record is None or record.user_id != user_id:
                return False
            del self.records[key]
            await self._persist()
        return True

    async def _persist(self) -> None:
        """Hook for subclasses that keep a durable copy."""
        return None
