from abc import ABC, abstractmethod
from datetime import date

from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.models import OccurrenceOverride


class OverrideStore(ABC):
    """Key-value access to stored occurrence statuses, keyed by ``OccurrenceKey``.

    ``upsert`` replaces whatever is stored under the key (last writer wins);
    there is never more than one record per key.
    """

    @abstractmethod
    async def list_range(self, user_id: str, start: date, end: date) -> list[OccurrenceOverride]:
        pass

    @abstractmethod
    async def get(self, user_id: str, key: OccurrenceKey) -> OccurrenceOverride | None:
        pass

    @abstractmethod
    async def upsert(self, override: OccurrenceOverride) -> OccurrenceOverride:
        pass

    @abstractmethod
    async def delete(self, user_id: str, key: OccurrenceKey) -> bool:
        """Remove the record; returns False when there was nothing to remove."""
        pass

    @abstractmethod
    async def find_by_transaction(self, user_id: str, transaction_id: str) -> OccurrenceOverride | None:
        """The record that claims ``transaction_id`` as its payment, if any."""
        pass
