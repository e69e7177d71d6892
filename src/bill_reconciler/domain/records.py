from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from pydantic import ValidationError

from bill_reconciler.domain.dates import parse_date, parse_timestamp
from bill_reconciler.errors import InvalidBillError, InvalidRecordError
from bill_reconciler.logger import get_logger
from bill_reconciler.models import (
    OccurrenceOverride,
    RecurringBill,
    RejectedRecord,
    Transaction,
)

logger = get_logger(__name__)

T = TypeVar("T")


def _first(row: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def parse_bill_row(row: dict[str, Any]) -> RecurringBill:
    bill_id = _optional_str(row.get("id"))
    if not bill_id:
        raise InvalidBillError(None, "missing id")
    try:
        active = _first(row, "active", "is_active")
        return RecurringBill(
            id=bill_id,
            name=str(row.get("name") or ""),
            amount=row.get("amount"),
            frequency=row.get("frequency"),
            due_day=row.get("due_day"),
            start_date=parse_date(row["start_date"]) if row.get("start_date") else None,
            end_date=parse_date(row["end_date"]) if row.get("end_date") else None,
            active=True if active is None else bool(active),
            provider=_optional_str(row.get("provider")),
            account_id=_optional_str(row.get("account_id")),
        )
    except ValidationError as exc:
        raise InvalidBillError(bill_id, _describe_validation_error(exc)) from exc
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise InvalidBillError(bill_id, str(exc)) from exc


def parse_transaction_row(row: dict[str, Any]) -> Transaction:
    txn_id = _optional_str(row.get("id"))
    if not txn_id:
        raise InvalidRecordError("transaction", None, "missing id")
    try:
        return Transaction(
            id=txn_id,
            amount=row.get("amount"),
            date=parse_date(_first(row, "transaction_date", "date")),
            description=str(row.get("description") or ""),
            merchant=_optional_str(row.get("merchant")),
            account_id=_optional_str(row.get("account_id")),
            bill_id=_optional_str(row.get("bill_id")),
            pending=bool(_first(row, "is_pending", "pending") or False),
        )
    except ValidationError as exc:
        raise InvalidRecordError("transaction", txn_id, _describe_validation_error(exc)) from exc
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise InvalidRecordError("transaction", txn_id, str(exc)) from exc


def parse_override_row(row: dict[str, Any]) -> OccurrenceOverride:
    record_id = None
    if row.get("bill_id") and row.get("due_date"):
        record_id = f"{row['bill_id']}-{row['due_date']}"
    try:
        return OccurrenceOverride(
            user_id=_optional_str(row.get("user_id")),
            bill_id=str(row.get("bill_id") or ""),
            due_date=parse_date(row.get("due_date")),
            status=row.get("status"),
            expected_amount=row.get("expected_amount"),
            paid_transaction_id=_optional_str(row.get("paid_transaction_id")),
            paid_at=parse_timestamp(row.get("paid_at")),
            match_confidence=row.get("match_confidence") or None,
            notes=_optional_str(row.get("notes")),
        )
    except ValidationError as exc:
        raise InvalidRecordError("override", record_id, _describe_validation_error(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise InvalidRecordError("override", record_id, str(exc)) from exc


def override_to_row(override: OccurrenceOverride) -> dict[str, Any]:
    return {
        "user_id": override.user_id,
        "bill_id": override.bill_id,
        "due_date": override.due_date.isoformat(),
        "status": override.status.value,
        "expected_amount": (
            str(override.expected_amount) if override.expected_amount is not None else None
        ),
        "paid_transaction_id": override.paid_transaction_id,
        "paid_at": override.paid_at.isoformat() if override.paid_at else None,
        "match_confidence": override.match_confidence.value if override.match_confidence else None,
        "notes": override.notes,
    }


def parse_rows(
    rows: Iterable[dict[str, Any]],
    parser: Callable[[dict[str, Any]], T],
    rejected: list[RejectedRecord] | None = None,
) -> list[T]:
    """Parse every row, logging and collecting the ones that cannot be used."""
    parsed: list[T] = []
    for row in rows:
        try:
            parsed.append(parser(row))
        except InvalidRecordError as exc:
            logger.warning("[RECORDS] Skipping %s: %s", exc.kind, exc)
            if rejected is not None:
                rejected.append(
                    RejectedRecord(kind=exc.kind, record_id=exc.record_id, reason=exc.reason)
                )
    return parsed
