from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bill_reconciler.domain.keys import OccurrenceKey

CENT = Decimal("0.01")


def to_money(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"
    BIANNUAL = "biannual"
    YEARLY = "yearly"


class OccurrenceStatus(str, Enum):
    DUE = "due"
    PAID = "paid"
    SKIPPED = "skipped"
    OVERDUE = "overdue"


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MANUAL = "manual"


STORED_STATUSES = frozenset({OccurrenceStatus.PAID, OccurrenceStatus.SKIPPED})


class RecurringBill(BaseModel):
    id: str
    name: str
    amount: Decimal
    frequency: Frequency
    due_day: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    active: bool = True
    provider: str | None = None  # Payee as it shows on statements
    account_id: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _money(cls, value: Decimal | float | int | str) -> Decimal:
        return to_money(value)


class Transaction(BaseModel):
    id: str
    amount: Decimal
    date: date
    description: str = ""
    merchant: str | None = None
    account_id: str | None = None
    bill_id: str | None = None
    pending: bool = False

    @field_validator("amount", mode="before")
    @classmethod
    def _money(cls, value: Decimal | float | int | str) -> Decimal:
        return to_money(value)


class Occurrence(BaseModel):
    """A computed, not yet merged, instance of a bill falling due."""

    model_config = ConfigDict(frozen=True)

    bill_id: str
    bill_name: str
    due_date: date
    expected_amount: Decimal
    provider: str | None = None
    account_id: str | None = None

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.bill_id, self.due_date)


class OccurrenceOverride(BaseModel):
    user_id: str | None = None
    bill_id: str
    due_date: date
    status: OccurrenceStatus
    expected_amount: Decimal | None = None
    paid_transaction_id: str | None = None
    paid_at: datetime | None = None
    match_confidence: MatchConfidence | None = None
    notes: str | None = None

    @field_validator("status")
    @classmethod
    def _stored_status(cls, value: OccurrenceStatus) -> OccurrenceStatus:
        if value not in STORED_STATUSES:
            raise ValueError(f"override status must be paid or skipped, got '{value.value}'")
        return value

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.bill_id, self.due_date)


class MergedOccurrence(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    bill_id: str
    bill_name: str
    due_date: date
    expected_amount: Decimal
    status: OccurrenceStatus
    paid_transaction_id: str | None = None
    paid_at: datetime | None = None
    match_confidence: MatchConfidence | None = None
    notes: str | None = None
    provider: str | None = Field(default=None, exclude=True)
    account_id: str | None = Field(default=None, exclude=True)

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.bill_id, self.due_date)

    @property
    def is_open(self) -> bool:
        return self.status in (OccurrenceStatus.DUE, OccurrenceStatus.OVERDUE)


class MatchCandidate(BaseModel):
    occurrence_id: str
    bill_id: str
    due_date: date
    transaction_id: str
    score: int
    confidence: MatchConfidence
    reasons: list[str] = Field(default_factory=list)

    @property
    def key(self) -> OccurrenceKey:
        return OccurrenceKey(self.bill_id, self.due_date)


class MatchResults(BaseModel):
    auto_apply: list[MatchCandidate] = Field(default_factory=list)
    for_review: list[MatchCandidate] = Field(default_factory=list)


class WriteFailure(BaseModel):
    occurrence_id: str
    transaction_id: str | None = None
    error: str


class RejectedRecord(BaseModel):
    kind: str
    record_id: str | None = None
    reason: str


class ReconciliationReport(BaseModel):
    user_id: str
    range_start: date
    range_end: date
    dry_run: bool = False
    occurrences: int = 0
    open_occurrences: int = 0
    transactions: int = 0
    auto_applied: list[MatchCandidate] = Field(default_factory=list)
    for_review: list[MatchCandidate] = Field(default_factory=list)
    failed: list[WriteFailure] = Field(default_factory=list)
    rejected: list[RejectedRecord] = Field(default_factory=list)
    duration_seconds: float = 0.0
