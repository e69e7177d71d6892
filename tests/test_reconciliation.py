from datetime import date
from typing import Any

import pytest

from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.errors import (
    InvalidTransitionError,
    MalformedOccurrenceIdError,
    OccurrenceNotFoundError,
    StorageError,
    TransactionAlreadyLinkedError,
)
from bill_reconciler.integration.ledger import Ledger
from bill_reconciler.matching.matcher import MatchConfig
from bill_reconciler.models import MatchConfidence, OccurrenceOverride, OccurrenceStatus
from bill_reconciler.services.calendar_cache import CalendarCache
from bill_reconciler.services.reconciliation import ReconciliationCoordinator
from bill_reconciler.storage.memory import MemoryOverrideStore

TODAY = date(2025, 6, 20)
JUNE = (date(2025, 6, 1), date(2025, 6, 30))


class FakeLedger(Ledger):
    def __init__(self, bills: list[dict[str, Any]], transactions: list[dict[str, Any]] | None = None) -> None:
        self.bills = bills
        self.transactions = transactions or []
        self.events: list[str] = []
        self.failing_links: set[str] = set()

    async def list_bills(self, user_id: str, *, active_only: bool = True) -> list[dict[str, Any]]:
        return [row for row in self.bills if row.get("is_active", True) or not active_only]

    async def get_bill(self, user_id: str, bill_id: str) -> dict[str, Any] | None:
        return next((row for row in self.bills if row.get("id") == bill_id), None)

    async def list_transactions(self, user_id: str, start: date, end: date) -> list[dict[str, Any]]:
        return [
            row for row in self.transactions
            if start.isoformat() <= row["transaction_date"] <= end.isoformat()
        ]

    async def set_transaction_bill(self, transaction_id: str, bill_id: str | None) -> None:
        if transaction_id in self.failing_links:
            raise StorageError(f"cannot link {transaction_id}")
        self.events.append(f"link {transaction_id} -> {bill_id}")
        for row in self.transactions:
            if row["id"] == transaction_id:
                row["bill_id"] = bill_id


class RecordingStore(MemoryOverrideStore):
    def __init__(self, events: list[str], failing_bills: set[str] | None = None) -> None:
        super().__init__()
        self.events = events
        self.failing_bills = failing_bills or set()
        self.fail_reads = False

    async def list_range(self, user_id, start, end):
        if self.fail_reads:
            raise StorageError("status table unavailable")
        return await super().list_range(user_id, start, end)

    async def upsert(self, override):
        if override.bill_id in self.failing_bills:
            raise StorageError(f"cannot write {override.bill_id}")
        self.events.append(f"upsert {override.key}")
        return await super().upsert(override)

    async def delete(self, user_id, key):
        self.events.append(f"delete {key}")
        return await super().delete(user_id, key)


def bill(bill_id: str, name: str, amount: str, due_day: int, **extra) -> dict[str, Any]:
    return {"id": bill_id, "name": name, "amount": amount, "frequency": "monthly", "due_day": due_day, **extra}


def transaction(txn_id: str, amount: str, day: str, description: str, **extra) -> dict[str, Any]:
    return {
        "id": txn_id,
        "amount": amount,
        "transaction_date": day,
        "description": description,
        "account_id": "acc-1",
        "bill_id": None,
        "is_pending": False,
        **extra,
    }


def build(bills, transactions=None, cache_ttl: float = 0) -> tuple[ReconciliationCoordinator, FakeLedger, RecordingStore]:
    ledger = FakeLedger(bills, transactions)
    store = RecordingStore(ledger.events)
    coordinator = ReconciliationCoordinator(
        ledger,
        store,
        cache=CalendarCache(ttl_seconds=cache_ttl),
        config=MatchConfig(),
        clock=lambda: TODAY,
    )
    return coordinator, ledger, store


@pytest.mark.anyio
async def test_list_occurrences_merges_stored_status() -> None:
    coordinator, _, store = build([bill("b1", "Acme Energy", "50", 15), bill("b2", "Water", "20", 25)])
    await store.upsert(OccurrenceOverride(
        user_id="u1", bill_id="b2", due_date=date(2025, 6, 25), status=OccurrenceStatus.SKIPPED
    ))

    occurrences = await coordinator.list_occurrences("u1", *JUNE)

    assert [(occ.id, occ.status) for occ in occurrences] == [
        ("b1-2025-06-15", OccurrenceStatus.OVERDUE),
        ("b2-2025-06-25", OccurrenceStatus.SKIPPED),
    ]


@pytest.mark.anyio
async def test_list_occurrences_skips_bad_bills() -> None:
    coordinator, _, _ = build([
        bill("b1", "Acme Energy", "50", 15),
        bill("bad", "Broken", "10", 40),
        {"id": "worse", "name": "x", "amount": "1", "frequency": "hourly"},
    ])
    occurrences = await coordinator.list_occurrences("u1", *JUNE)
    assert [occ.bill_id for occ in occurrences] == ["b1"]


@pytest.mark.anyio
async def test_list_occurrences_fails_closed_when_statuses_unreadable() -> None:
    coordinator, _, store = build([bill("b1", "Acme Energy", "50", 15)])
    store.fail_reads = True
    with pytest.raises(StorageError):
        await coordinator.list_occurrences("u1", *JUNE)


@pytest.mark.anyio
async def test_reversed_range_rejected() -> None:
    coordinator, _, _ = build([])
    with pytest.raises(ValueError):
        await coordinator.list_occurrences("u1", date(2025, 6, 30), date(2025, 6, 1))


@pytest.mark.anyio
async def test_reconcile_applies_confident_match() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME ENERGY DD")],
    )

    report = await coordinator.reconcile("u1", *JUNE)

    assert [m.transaction_id for m in report.auto_applied] == ["t1"]
    assert report.for_review == []
    assert report.failed == []
    stored = await store.get("u1", OccurrenceKey("b1", date(2025, 6, 15)))
    assert stored is not None
    assert stored.status is OccurrenceStatus.PAID
    assert stored.paid_transaction_id == "t1"
    assert stored.match_confidence is MatchConfidence.HIGH
    assert str(stored.expected_amount) == "50.00"
    assert ledger.transactions[0]["bill_id"] == "b1"

    second = await coordinator.reconcile("u1", *JUNE)
    assert second.auto_applied == []
    assert second.open_occurrences == 0


@pytest.mark.anyio
async def test_reconcile_dry_run_writes_nothing() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME ENERGY")],
    )

    report = await coordinator.reconcile("u1", *JUNE, apply=False)

    assert report.dry_run is True
    assert [m.transaction_id for m in report.auto_applied] == ["t1"]
    assert store.records == {}
    assert ledger.events == []


@pytest.mark.anyio
async def test_review_matches_are_reported_not_written() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-49.50", "2025-06-20", "ACME ENERGY")],
    )

    report = await coordinator.reconcile("u1", *JUNE)

    assert report.auto_applied == []
    assert [(m.transaction_id, m.score) for m in report.for_review] == [("t1", 60)]
    assert store.records == {}
    assert ledger.events == []


@pytest.mark.anyio
async def test_linked_transaction_not_reused() -> None:
    coordinator, _, store = build(
        [bill("b1", "Acme Energy", "50.00", 1), bill("b2", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME ENERGY")],
    )
    await store.upsert(OccurrenceOverride(
        user_id="u1",
        bill_id="b1",
        due_date=date(2025, 6, 1),
        status=OccurrenceStatus.PAID,
        paid_transaction_id="t1",
    ))

    report = await coordinator.reconcile("u1", *JUNE)

    assert report.auto_applied == []
    assert report.for_review == []


@pytest.mark.anyio
async def test_write_failure_does_not_stop_other_matches() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15), bill("b2", "Thames Water", "30.00", 18)],
        [
            transaction("t1", "-50.00", "2025-06-15", "ACME ENERGY"),
            transaction("t2", "-30.00", "2025-06-18", "THAMES WATER"),
        ],
    )
    store.failing_bills = {"b1"}

    report = await coordinator.reconcile("u1", *JUNE)

    assert [f.occurrence_id for f in report.failed] == ["b1-2025-06-15"]
    assert [m.occurrence_id for m in report.auto_applied] == ["b2-2025-06-18"]
    assert ledger.events == [
        "link t1 -> b1",
        "link t1 -> None",
        "link t2 -> b2",
        "upsert b2-2025-06-18",
    ]


@pytest.mark.anyio
async def test_failed_status_write_is_retried_next_pass() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME ENERGY")],
    )
    store.failing_bills = {"b1"}

    first = await coordinator.reconcile("u1", *JUNE)

    assert [f.occurrence_id for f in first.failed] == ["b1-2025-06-15"]
    assert first.auto_applied == []
    assert store.records == {}
    assert ledger.transactions[0]["bill_id"] is None

    store.failing_bills = set()
    second = await coordinator.reconcile("u1", *JUNE)

    assert [m.transaction_id for m in second.auto_applied] == ["t1"]
    assert second.failed == []
    assert ledger.transactions[0]["bill_id"] == "b1"
    stored = await store.get("u1", OccurrenceKey("b1", date(2025, 6, 15)))
    assert stored is not None
    assert stored.paid_transaction_id == "t1"


@pytest.mark.anyio
async def test_mark_paid_failure_leaves_transaction_unlinked() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t9", "-50.00", "2025-06-16", "MANUAL")],
    )
    store.failing_bills = {"b1"}

    with pytest.raises(StorageError):
        await coordinator.mark_paid("u1", "b1-2025-06-15", transaction_id="t9")

    assert ledger.events == ["link t9 -> b1", "link t9 -> None"]
    assert ledger.transactions[0]["bill_id"] is None
    assert store.records == {}


@pytest.mark.anyio
async def test_reconcile_reports_rejected_rows() -> None:
    coordinator, _, _ = build(
        [bill("b1", "Acme Energy", "50.00", 15), bill("bad", "Broken", "10", 0)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME"), {"id": "t2", "transaction_date": "2025-06-02"}],
    )

    report = await coordinator.reconcile("u1", *JUNE)

    assert sorted((r.kind, r.record_id) for r in report.rejected) == [
        ("bill", "bad"),
        ("transaction", "t2"),
    ]
    assert report.transactions == 1


@pytest.mark.anyio
async def test_mark_paid_links_transaction_and_is_idempotent() -> None:
    coordinator, ledger, _ = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t9", "-50.00", "2025-06-16", "MANUAL")],
    )

    paid = await coordinator.mark_paid("u1", "b1-2025-06-15", transaction_id="t9", notes="paid by card")
    again = await coordinator.mark_paid("u1", "b1-2025-06-15", transaction_id="t9")

    assert paid.status is OccurrenceStatus.PAID
    assert paid.match_confidence is MatchConfidence.MANUAL
    assert paid.notes == "paid by card"
    assert again.paid_transaction_id == "t9"
    assert ledger.events == ["link t9 -> b1", "upsert b1-2025-06-15"]


@pytest.mark.anyio
async def test_transaction_cannot_pay_two_occurrences() -> None:
    coordinator, ledger, _ = build(
        [bill("b1", "Acme Energy", "50.00", 15), bill("b2", "Acme Broadband", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME")],
    )
    await coordinator.mark_paid("u1", "b1-2025-06-15", transaction_id="t1")

    with pytest.raises(TransactionAlreadyLinkedError):
        await coordinator.mark_paid("u1", "b2-2025-06-15", transaction_id="t1")

    other = await coordinator.get_occurrence("u1", "b2-2025-06-15")
    assert other.status is OccurrenceStatus.OVERDUE
    assert ledger.transactions[0]["bill_id"] == "b1"

    await coordinator.reset("u1", "b1-2025-06-15")
    moved = await coordinator.mark_paid("u1", "b2-2025-06-15", transaction_id="t1")

    assert moved.paid_transaction_id == "t1"
    assert ledger.transactions[0]["bill_id"] == "b2"


@pytest.mark.anyio
async def test_same_bill_next_month_cannot_reuse_transaction() -> None:
    coordinator, _, _ = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [transaction("t1", "-50.00", "2025-06-15", "ACME")],
    )
    await coordinator.mark_paid("u1", "b1-2025-06-15", transaction_id="t1")

    with pytest.raises(TransactionAlreadyLinkedError):
        await coordinator.mark_paid("u1", "b1-2025-07-15", transaction_id="t1")


@pytest.mark.anyio
async def test_skip_then_pay_requires_reset() -> None:
    coordinator, _, _ = build([bill("b1", "Acme Energy", "50.00", 15)])

    skipped = await coordinator.skip("u1", "b1-2025-06-15", notes="waived")
    assert skipped.status is OccurrenceStatus.SKIPPED
    assert (await coordinator.skip("u1", "b1-2025-06-15")).status is OccurrenceStatus.SKIPPED

    with pytest.raises(InvalidTransitionError):
        await coordinator.mark_paid("u1", "b1-2025-06-15")


@pytest.mark.anyio
async def test_reset_unlinks_transaction_before_deleting_status() -> None:
    coordinator, ledger, store = build(
        [bill("b1", "Acme Energy", "50.00", 25)],
        [transaction("t1", "-50.00", "2025-06-25", "ACME ENERGY")],
    )
    await coordinator.mark_paid("u1", "b1-2025-06-25", transaction_id="t1")
    ledger.events.clear()

    reset = await coordinator.reset("u1", "b1-2025-06-25")

    assert ledger.events == ["link t1 -> None", "delete b1-2025-06-25"]
    assert reset.status is OccurrenceStatus.DUE
    assert reset.paid_transaction_id is None
    assert store.records == {}
    assert ledger.transactions[0]["bill_id"] is None


@pytest.mark.anyio
async def test_reset_of_open_occurrence_is_a_no_op() -> None:
    coordinator, ledger, _ = build([bill("b1", "Acme Energy", "50.00", 15)])
    reset = await coordinator.reset("u1", "b1-2025-06-15")
    assert reset.status is OccurrenceStatus.OVERDUE
    assert ledger.events == []


@pytest.mark.anyio
async def test_get_occurrence_errors() -> None:
    coordinator, _, _ = build([bill("b1", "Acme Energy", "50.00", 15)])

    with pytest.raises(MalformedOccurrenceIdError):
        await coordinator.get_occurrence("u1", "b1-15th")
    with pytest.raises(OccurrenceNotFoundError):
        await coordinator.get_occurrence("u1", "nope-2025-06-15")
    with pytest.raises(OccurrenceNotFoundError):
        await coordinator.get_occurrence("u1", "b1-2025-06-16")


@pytest.mark.anyio
async def test_get_occurrence_keeps_status_after_schedule_moves() -> None:
    coordinator, ledger, store = build([bill("b1", "Acme Energy", "50.00", 15)])
    await store.upsert(OccurrenceOverride(
        user_id="u1",
        bill_id="b1",
        due_date=date(2025, 6, 10),
        status=OccurrenceStatus.PAID,
        expected_amount="45.00",
    ))

    occurrence = await coordinator.get_occurrence("u1", "b1-2025-06-10")

    assert occurrence.status is OccurrenceStatus.PAID
    assert str(occurrence.expected_amount) == "45.00"


@pytest.mark.anyio
async def test_cached_calendar_refreshed_after_status_change() -> None:
    coordinator, _, _ = build([bill("b1", "Acme Energy", "50.00", 15)], cache_ttl=60)

    before = await coordinator.list_occurrences("u1", *JUNE)
    await coordinator.skip("u1", "b1-2025-06-15")
    after = await coordinator.list_occurrences("u1", *JUNE)

    assert before[0].status is OccurrenceStatus.OVERDUE
    assert after[0].status is OccurrenceStatus.SKIPPED


@pytest.mark.anyio
async def test_diagnose_returns_candidates_around_due_date() -> None:
    coordinator, _, _ = build(
        [bill("b1", "Acme Energy", "50.00", 15)],
        [
            transaction("t1", "-50.00", "2025-06-16", "ACME ENERGY"),
            transaction("t2", "-50.00", "2025-06-29", "ACME ENERGY"),
        ],
    )
    rows = await coordinator.diagnose("u1", "b1-2025-06-15")
    assert [row["transaction_id"] for row in rows] == ["t1"]
