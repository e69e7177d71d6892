from collections.abc import Iterable
from datetime import date

from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.errors import InvalidTransitionError
from bill_reconciler.models import (
    MergedOccurrence,
    Occurrence,
    OccurrenceOverride,
    OccurrenceStatus,
)

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[OccurrenceStatus, frozenset[OccurrenceStatus]] = {
    OccurrenceStatus.PAID: frozenset({OccurrenceStatus.DUE, OccurrenceStatus.OVERDUE}),
    OccurrenceStatus.SKIPPED: frozenset({OccurrenceStatus.DUE, OccurrenceStatus.OVERDUE}),
    OccurrenceStatus.DUE: frozenset({OccurrenceStatus.PAID, OccurrenceStatus.SKIPPED}),
}


def resolve_status(
    due_date: date,
    override: OccurrenceOverride | None,
    today: date,
) -> OccurrenceStatus:
    if override is not None:
        return override.status
    if due_date < today:
        return OccurrenceStatus.OVERDUE
    return OccurrenceStatus.DUE


def ensure_transition(current: OccurrenceStatus, target: OccurrenceStatus) -> None:
    if current not in ALLOWED_TRANSITIONS.get(target, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


def index_overrides(overrides: Iterable[OccurrenceOverride]) -> dict[OccurrenceKey, OccurrenceOverride]:
    # Storage guarantees one row per key; if a caller hands us duplicates the last one wins.
    return {override.key: override for override in overrides}


def merge_occurrence(
    occurrence: Occurrence,
    override: OccurrenceOverride | None,
    today: date,
) -> MergedOccurrence:
    status = resolve_status(occurrence.due_date, override, today)
    return MergedOccurrence(
        id=occurrence.key.encode(),
        bill_id=occurrence.bill_id,
        bill_name=occurrence.bill_name,
        due_date=occurrence.due_date,
        expected_amount=occurrence.expected_amount,
        status=status,
        paid_transaction_id=override.paid_transaction_id if override else None,
        paid_at=override.paid_at if override else None,
        match_confidence=override.match_confidence if override else None,
        notes=override.notes if override else None,
        provider=occurrence.provider,
        account_id=occurrence.account_id,
    )


def merge_occurrences(
    computed: Iterable[Occurrence],
    overrides: Iterable[OccurrenceOverride],
    today: date,
) -> list[MergedOccurrence]:
    """Layer stored paid/skipped records over the computed schedule.

    Overrides without a computed counterpart are ignored: the schedule decides
    which occurrences exist, storage only decides their status.
    """
    by_key = index_overrides(overrides)
    return [
        merge_occurrence(occurrence, by_key.get(occurrence.key), today)
        for occurrence in computed
    ]


def linked_transaction_ids(overrides: Iterable[OccurrenceOverride]) -> set[str]:
    return {
        override.paid_transaction_id
        for override in overrides
        if override.paid_transaction_id
    }
