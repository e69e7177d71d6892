import calendar
from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone
from typing import Any

# Day-of-week numbering used by stored bills: 0 = Sunday ... 6 = Saturday.
SUNDAY = 0
MONDAY = 1


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """Return ``day`` in the given month, pulled back to the month's last day if it overflows."""
    return date(year, month, min(day, days_in_month(year, month)))


def month_index(value: date) -> int:
    return value.year * 12 + (value.month - 1)


def iter_months(start: date, end: date) -> Iterator[tuple[int, int]]:
    """Yield (year, month) for every calendar month intersecting [start, end]."""
    for index in range(month_index(start), month_index(end) + 1):
        year, zero_based_month = divmod(index, 12)
        yield year, zero_based_month + 1


def iter_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def day_of_week(value: date) -> int:
    # date.weekday() counts from Monday; shift so Sunday is 0.
    return (value.weekday() + 1) % 7


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, days_in_month(year, month))


def parse_date(value: Any) -> date:
    """Parse a stored date or timestamp into a ``date``; raises ``ValueError`` when unusable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    raise ValueError(f"not a date: {value!r}")


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return date.today()


def format_duration(seconds: float) -> str:
    if seconds <= 0:
        return "0 ms"
    if seconds < 1:
        return f"{seconds * 1000:.1f} ms"
    if seconds < 60:
        return f"{seconds:.2f} s"
    return f"{seconds / 60:.2f} min"
