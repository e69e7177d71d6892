from abc import ABC, abstractmethod
from dataclasses import dataclass

from bill_reconciler.models import MergedOccurrence, Transaction


@dataclass(frozen=True)
class SignalResult:
    points: int
    reason: str


class Signal(ABC):
    name: str = "signal"

    @abstractmethod
    def evaluate(
        self, occurrence: MergedOccurrence, transaction: Transaction
    ) -> SignalResult | None:
        """Score one aspect of how well the transaction fits the occurrence."""
        pass
