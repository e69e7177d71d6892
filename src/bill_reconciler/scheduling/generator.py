"""Expansion of recurring bills into dated occurrences.

Everything here is pure: the same bills and range always produce the same
occurrences, and a range split in two produces the same set as the whole.
"""

from collections.abc import Iterable, Iterator
from datetime import date, timedelta

from bill_reconciler.domain.dates import (
    MONDAY,
    clamp_day,
    day_of_week,
    iter_days,
    iter_months,
    month_bounds,
    month_index,
)
from bill_reconciler.errors import InvalidBillError
from bill_reconciler.models import Frequency, Occurrence, RecurringBill

# Bills without a start date are anchored here; fortnightly cadence and
# month-stepped frequencies are counted from this point.
DEFAULT_ANCHOR_DATE = date(2020, 1, 1)

FORTNIGHT_DAYS = 14

MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.BIMONTHLY: 2,
    Frequency.QUARTERLY: 3,
    Frequency.BIANNUAL: 6,
    Frequency.YEARLY: 12,
}

_WEEKDAY_FREQUENCIES = (Frequency.WEEKLY, Frequency.FORTNIGHTLY)


def _frequency(bill: RecurringBill) -> Frequency:
    try:
        return Frequency(bill.frequency)
    except ValueError as exc:
        raise InvalidBillError(bill.id, f"unknown frequency {bill.frequency!r}") from exc


def validate_bill(bill: RecurringBill) -> Frequency:
    """Check the fields the schedule depends on and return the bill's frequency."""
    frequency = _frequency(bill)
    due_day = bill.due_day
    if due_day is None or frequency is Frequency.DAILY:
        return frequency
    if isinstance(due_day, bool) or not isinstance(due_day, int):
        raise InvalidBillError(bill.id, f"due_day must be an integer, got {due_day!r}")
    lowest = 0 if frequency in _WEEKDAY_FREQUENCIES else 1
    if not lowest <= due_day <= 31:
        raise InvalidBillError(bill.id, f"due_day {due_day} outside {lowest}-31")
    return frequency


def _active_window(bill: RecurringBill, range_start: date, range_end: date) -> tuple[date, date] | None:
    low = max(range_start, bill.start_date) if bill.start_date else range_start
    high = min(range_end, bill.end_date) if bill.end_date else range_end
    if low > high:
        return None
    return low, high


def _day_of_month(bill: RecurringBill) -> int:
    if bill.due_day is not None:
        return bill.due_day
    if bill.start_date:
        return bill.start_date.day
    # Clamps to the last day of every month
    return 31


def _weekday(bill: RecurringBill) -> int:
    if bill.due_day is not None:
        return bill.due_day % 7
    if bill.start_date:
        return day_of_week(bill.start_date)
    return MONDAY


def _month_stepped_dates(bill: RecurringBill, step: int, low: date, high: date) -> Iterator[date]:
    anchor = month_index(bill.start_date or DEFAULT_ANCHOR_DATE)
    day = _day_of_month(bill)
    for year, month in iter_months(low, high):
        if (month_index(date(year, month, 1)) - anchor) % step:
            continue
        due = clamp_day(year, month, day)
        if low <= due <= high:
            yield due


def _weekly_dates(bill: RecurringBill, low: date, high: date) -> Iterator[date]:
    target = _weekday(bill)
    for day in iter_days(low, high):
        if day_of_week(day) == target:
            yield day


def fortnightly_reference(bill: RecurringBill) -> date:
    """The fixed occurrence every other fortnightly due date is counted from."""
    anchor = bill.start_date or DEFAULT_ANCHOR_DATE
    if bill.due_day is None:
        return anchor
    shift = (_weekday(bill) - day_of_week(anchor)) % 7
    return anchor + timedelta(days=shift)


def _fortnightly_dates(bill: RecurringBill, low: date, high: date) -> Iterator[date]:
    reference = fortnightly_reference(bill)
    # Ceiling division also works for windows that start before the reference.
    periods = -((reference - low).days // FORTNIGHT_DAYS)
    current = reference + timedelta(days=periods * FORTNIGHT_DAYS)
    while current <= high:
        if current >= low:
            yield current
        current += timedelta(days=FORTNIGHT_DAYS)


def _due_dates(bill: RecurringBill, frequency: Frequency, low: date, high: date) -> Iterator[date]:
    if frequency is Frequency.DAILY:
        return iter_days(low, high)
    if frequency is Frequency.WEEKLY:
        return _weekly_dates(bill, low, high)
    if frequency is Frequency.FORTNIGHTLY:
        return _fortnightly_dates(bill, low, high)
    return _month_stepped_dates(bill, MONTH_STEPS[frequency], low, high)


def generate_bill_occurrences(
    bill: RecurringBill,
    range_start: date,
    range_end: date,
    *,
    include_inactive: bool = False,
) -> list[Occurrence]:
    """Occurrences of one bill inside the inclusive range, in date order.

    Raises ``InvalidBillError`` for an unknown frequency or an out-of-range due day.
    """
    frequency = validate_bill(bill)
    if not bill.active and not include_inactive:
        return []
    window = _active_window(bill, range_start, range_end)
    if window is None:
        return []

    return [
        Occurrence(
            bill_id=bill.id,
            bill_name=bill.name,
            due_date=due,
            expected_amount=bill.amount,
            provider=bill.provider,
            account_id=bill.account_id,
        )
        for due in _due_dates(bill, frequency, *window)
    ]


def generate_occurrences(
    bills: Iterable[RecurringBill],
    range_start: date,
    range_end: date,
) -> list[Occurrence]:
    """Occurrences of every bill in the range, sorted by due date then bill id."""
    by_key: dict[tuple[date, str], Occurrence] = {}
    for bill in bills:
        for occurrence in generate_bill_occurrences(bill, range_start, range_end):
            by_key.setdefault((occurrence.due_date, occurrence.bill_id), occurrence)
    return [by_key[key] for key in sorted(by_key)]


def occurrences_for_month(bills: Iterable[RecurringBill], year: int, month: int) -> list[Occurrence]:
    return generate_occurrences(bills, *month_bounds(year, month))


def is_due_on(bill: RecurringBill, day: date) -> bool:
    """True when ``day`` is one of the bill's scheduled due dates, ignoring the active flag."""
    return bool(generate_bill_occurrences(bill, day, day, include_inactive=True))
