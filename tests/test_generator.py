from datetime import date, timedelta

import pytest

from bill_reconciler.errors import InvalidBillError
from bill_reconciler.models import RecurringBill
from bill_reconciler.scheduling.generator import (
    fortnightly_reference,
    generate_bill_occurrences,
    generate_occurrences,
    is_due_on,
    occurrences_for_month,
    validate_bill,
)


def make_bill(**overrides) -> RecurringBill:
    fields = {
        "id": "b1",
        "name": "Acme Energy",
        "amount": "50.00",
        "frequency": "monthly",
        "due_day": 15,
    }
    fields.update(overrides)
    return RecurringBill(**fields)


def due_dates(bill: RecurringBill, start: date, end: date) -> list[date]:
    return [occ.due_date for occ in generate_bill_occurrences(bill, start, end)]


def test_monthly_due_day_clamped_to_short_month() -> None:
    bill = make_bill(due_day=31)
    assert due_dates(bill, date(2025, 2, 1), date(2025, 2, 28)) == [date(2025, 2, 28)]
    assert due_dates(bill, date(2024, 2, 1), date(2024, 2, 29)) == [date(2024, 2, 29)]
    assert due_dates(bill, date(2025, 4, 1), date(2025, 4, 30)) == [date(2025, 4, 30)]


def test_monthly_occurrence_carries_bill_details() -> None:
    bill = make_bill(provider="Acme", account_id="acc-1")
    [occurrence] = generate_bill_occurrences(bill, date(2025, 6, 1), date(2025, 6, 30))
    assert occurrence.bill_id == "b1"
    assert occurrence.bill_name == "Acme Energy"
    assert occurrence.due_date == date(2025, 6, 15)
    assert str(occurrence.expected_amount) == "50.00"
    assert occurrence.provider == "Acme"
    assert occurrence.account_id == "acc-1"
    assert occurrence.key.encode() == "b1-2025-06-15"


def test_weekly_bill_falls_on_every_matching_weekday() -> None:
    # due_day 1 is Monday
    bill = make_bill(frequency="weekly", due_day=1)
    assert due_dates(bill, date(2025, 6, 1), date(2025, 6, 30)) == [
        date(2025, 6, 2),
        date(2025, 6, 9),
        date(2025, 6, 16),
        date(2025, 6, 23),
        date(2025, 6, 30),
    ]


def test_weekly_due_day_zero_is_sunday() -> None:
    bill = make_bill(frequency="weekly", due_day=0)
    dates = due_dates(bill, date(2025, 6, 1), date(2025, 6, 30))
    assert dates[0] == date(2025, 6, 1)
    assert all(day.weekday() == 6 for day in dates)


def test_fortnightly_counts_from_first_weekday_after_start() -> None:
    bill = make_bill(frequency="fortnightly", due_day=15, start_date=date(2025, 6, 1))
    assert fortnightly_reference(bill) == date(2025, 6, 2)
    assert due_dates(bill, date(2025, 6, 1), date(2025, 6, 30)) == [
        date(2025, 6, 2),
        date(2025, 6, 16),
        date(2025, 6, 30),
    ]


def test_fortnightly_keeps_cadence_across_months() -> None:
    bill = make_bill(frequency="fortnightly", due_day=15, start_date=date(2025, 6, 1))
    assert due_dates(bill, date(2025, 7, 1), date(2025, 7, 31)) == [
        date(2025, 7, 14),
        date(2025, 7, 28),
    ]


def test_quarterly_steps_three_months_from_start() -> None:
    bill = make_bill(frequency="quarterly", start_date=date(2025, 1, 15))
    assert due_dates(bill, date(2025, 1, 1), date(2025, 12, 31)) == [
        date(2025, 1, 15),
        date(2025, 4, 15),
        date(2025, 7, 15),
        date(2025, 10, 15),
    ]


def test_bimonthly_and_biannual_step_from_start_month() -> None:
    bimonthly = make_bill(frequency="bimonthly", due_day=5, start_date=date(2025, 1, 5))
    assert [day.month for day in due_dates(bimonthly, date(2025, 1, 1), date(2025, 12, 31))] == [
        1, 3, 5, 7, 9, 11,
    ]
    biannual = make_bill(frequency="biannual", due_day=20, start_date=date(2024, 3, 20))
    assert due_dates(biannual, date(2025, 1, 1), date(2025, 12, 31)) == [
        date(2025, 3, 20),
        date(2025, 9, 20),
    ]


def test_yearly_without_due_day_uses_start_day() -> None:
    bill = make_bill(frequency="yearly", due_day=None, start_date=date(2024, 3, 10))
    assert due_dates(bill, date(2025, 1, 1), date(2025, 12, 31)) == [date(2025, 3, 10)]


def test_daily_bill_covers_every_day() -> None:
    bill = make_bill(frequency="daily", due_day=None)
    assert due_dates(bill, date(2025, 6, 1), date(2025, 6, 3)) == [
        date(2025, 6, 1),
        date(2025, 6, 2),
        date(2025, 6, 3),
    ]


def test_start_and_end_dates_bound_the_schedule() -> None:
    bill = make_bill(start_date=date(2025, 2, 20), end_date=date(2025, 4, 30))
    assert due_dates(bill, date(2025, 1, 1), date(2025, 12, 31)) == [
        date(2025, 3, 15),
        date(2025, 4, 15),
    ]


def test_range_outside_active_window_is_empty() -> None:
    bill = make_bill(end_date=date(2024, 12, 31))
    assert due_dates(bill, date(2025, 1, 1), date(2025, 12, 31)) == []


def test_inactive_bill_only_generated_on_request() -> None:
    bill = make_bill(active=False)
    assert generate_bill_occurrences(bill, date(2025, 6, 1), date(2025, 6, 30)) == []
    assert len(generate_bill_occurrences(
        bill, date(2025, 6, 1), date(2025, 6, 30), include_inactive=True
    )) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"frequency": "daily", "due_day": None},
        {"frequency": "weekly", "due_day": 3},
        {"frequency": "fortnightly", "due_day": 5},
        {"frequency": "fortnightly", "due_day": 2, "start_date": date(2025, 3, 9)},
        {"frequency": "monthly", "due_day": 31},
        {"frequency": "bimonthly", "due_day": 10},
        {"frequency": "quarterly", "due_day": 30, "start_date": date(2024, 11, 30)},
        {"frequency": "biannual", "due_day": 1},
        {"frequency": "yearly", "due_day": 29, "start_date": date(2024, 2, 29)},
    ],
)
def test_splitting_the_range_does_not_change_the_result(overrides) -> None:
    bill = make_bill(**overrides)
    start, end = date(2025, 1, 1), date(2025, 12, 31)
    whole = due_dates(bill, start, end)
    split = date(2025, 5, 17)
    halves = due_dates(bill, start, split) + due_dates(bill, split + timedelta(days=1), end)
    assert whole
    assert halves == whole


def test_generate_occurrences_sorts_and_deduplicates() -> None:
    water = make_bill(id="b2", name="Water", due_day=1)
    energy = make_bill(id="b1", due_day=1)
    phone = make_bill(id="b3", name="Phone", due_day=20)
    occurrences = generate_occurrences(
        [phone, water, energy, energy], date(2025, 6, 1), date(2025, 6, 30)
    )
    assert [(occ.due_date.day, occ.bill_id) for occ in occurrences] == [
        (1, "b1"),
        (1, "b2"),
        (20, "b3"),
    ]


def test_occurrences_for_month_covers_whole_month() -> None:
    bill = make_bill(frequency="weekly", due_day=1)
    assert len(occurrences_for_month([bill], 2025, 6)) == 5


def test_is_due_on_ignores_active_flag() -> None:
    bill = make_bill(active=False)
    assert is_due_on(bill, date(2025, 6, 15))
    assert not is_due_on(bill, date(2025, 6, 16))


@pytest.mark.parametrize(
    ("frequency", "due_day"),
    [("monthly", 0), ("monthly", 32), ("weekly", -1), ("yearly", 40)],
)
def test_out_of_range_due_day_rejected(frequency: str, due_day: int) -> None:
    bill = make_bill(frequency=frequency, due_day=due_day)
    with pytest.raises(InvalidBillError) as exc_info:
        validate_bill(bill)
    assert exc_info.value.record_id == "b1"
    with pytest.raises(InvalidBillError):
        generate_bill_occurrences(bill, date(2025, 1, 1), date(2025, 1, 31))
