import re
from dataclasses import dataclass
from datetime import date

from bill_reconciler.errors import MalformedOccurrenceIdError

_DATE_SUFFIX_LENGTH = 10
_SEPARATOR = "-"
_ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


@dataclass(frozen=True, order=True)
class OccurrenceKey:
    """Identity of a bill occurrence: the bill it belongs to and the day it falls due.

    The encoded form ``"{bill_id}-{YYYY-MM-DD}"`` is what collaborators store and
    pass around. Bill ids may themselves contain ``-`` (UUIDs do), so parsing works
    from the fixed-width date suffix rather than splitting on the separator.
    """

    bill_id: str
    due_date: date

    def __post_init__(self) -> None:
        if not self.bill_id:
            raise ValueError("bill_id must not be empty")

    def encode(self) -> str:
        return f"{self.bill_id}{_SEPARATOR}{self.due_date.isoformat()}"

    def __str__(self) -> str:
        return self.encode()

    @classmethod
    def parse(cls, raw: str) -> "OccurrenceKey":
        if not isinstance(raw, str):
            raise MalformedOccurrenceIdError(repr(raw), "expected a string")
        if len(raw) < _DATE_SUFFIX_LENGTH + 2:
            raise MalformedOccurrenceIdError(raw, "too short to hold a bill id and a date")

        separator = raw[-_DATE_SUFFIX_LENGTH - 1]
        if separator != _SEPARATOR:
            raise MalformedOccurrenceIdError(raw, "missing separator before the date suffix")

        date_part = raw[-_DATE_SUFFIX_LENGTH:]
        if not _ISO_DATE.fullmatch(date_part):
            raise MalformedOccurrenceIdError(raw, "date suffix is not YYYY-MM-DD")
        try:
            due_date = date.fromisoformat(date_part)
        except ValueError as exc:
            raise MalformedOccurrenceIdError(raw, f"invalid date {date_part}") from exc

        bill_id = raw[:-_DATE_SUFFIX_LENGTH - 1]
        if not bill_id.strip():
            raise MalformedOccurrenceIdError(raw, "bill id is empty")
        return cls(bill_id=bill_id, due_date=due_date)

    @classmethod
    def coerce(cls, value: "OccurrenceKey | str") -> "OccurrenceKey":
        if isinstance(value, OccurrenceKey):
            return value
        return cls.parse(value)
