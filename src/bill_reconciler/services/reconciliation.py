import asyncio
from collections.abc import Callable, Iterable
from datetime import date, timedelta
from decimal import Decimal
from time import perf_counter
from typing import Any

from bill_reconciler.domain.dates import format_duration, today, utc_now
from bill_reconciler.domain.keys import OccurrenceKey
from bill_reconciler.domain.records import (
    parse_bill_row,
    parse_rows,
    parse_transaction_row,
)
from bill_reconciler.errors import (
    BillReconcilerError,
    InvalidBillError,
    OccurrenceNotFoundError,
    TransactionAlreadyLinkedError,
)
from bill_reconciler.integration.ledger import Ledger
from bill_reconciler.logger import get_logger
from bill_reconciler.matching.matcher import MatchConfig, TransactionMatcher, diagnose_occurrence
from bill_reconciler.matching.signals import DATE_WINDOW_DAYS
from bill_reconciler.models import (
    MatchCandidate,
    MatchConfidence,
    MergedOccurrence,
    Occurrence,
    OccurrenceOverride,
    OccurrenceStatus,
    ReconciliationReport,
    RecurringBill,
    RejectedRecord,
    WriteFailure,
)
from bill_reconciler.scheduling.generator import (
    generate_bill_occurrences,
    generate_occurrences,
    validate_bill,
)
from bill_reconciler.scheduling.merger import (
    ensure_transition,
    linked_transaction_ids,
    merge_occurrence,
    merge_occurrences,
    resolve_status,
)
from bill_reconciler.services.calendar_cache import CalendarCache
from bill_reconciler.storage.base import OverrideStore

logger = get_logger(__name__)

KeyLike = OccurrenceKey | str


def _with_override(current: MergedOccurrence, override: OccurrenceOverride) -> MergedOccurrence:
    return current.model_copy(update={
        "status": override.status,
        "paid_transaction_id": override.paid_transaction_id,
        "paid_at": override.paid_at,
        "match_confidence": override.match_confidence,
        "notes": override.notes,
    })


class ReconciliationCoordinator:
    """Runs reconciliation passes and status changes for one user at a time.

    Reads go bills -> overrides -> transactions; every write is a single
    upsert or delete of one override, plus the transaction's bill link.
    """

    def __init__(
        self,
        ledger: Ledger,
        store: OverrideStore,
        *,
        cache: CalendarCache | None = None,
        config: MatchConfig | None = None,
        clock: Callable[[], date] = today,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.cache = cache or CalendarCache(ttl_seconds=0)
        self.matcher = TransactionMatcher(config or MatchConfig.from_env())
        self.clock = clock

    def refresh_match_config(self) -> None:
        self.matcher = TransactionMatcher(MatchConfig.from_env())
        logger.info(
            "[CONFIG] Match thresholds set to auto-apply=%s review=%s.",
            self.matcher.config.auto_apply_threshold,
            self.matcher.config.review_threshold,
        )

    async def _invalidate(self, user_id: str) -> None:
        await self.cache.invalidate(user_id)

    async def _load_bills(self, user_id: str, rejected: list[RejectedRecord]) -> list[RecurringBill]:
        rows = await self.ledger.list_bills(user_id, active_only=True)
        return parse_rows(rows, parse_bill_row, rejected)

    def _generate(
        self,
        bills: Iterable[RecurringBill],
        start: date,
        end: date,
        rejected: list[RejectedRecord],
    ) -> list[Occurrence]:
        usable: list[RecurringBill] = []
        for bill in bills:
            try:
                validate_bill(bill)
            except InvalidBillError as exc:
                logger.warning("[RECONCILE] Excluding bill %s: %s", bill.id, exc.reason)
                rejected.append(RejectedRecord(kind="bill", record_id=bill.id, reason=exc.reason))
                continue
            usable.append(bill)
        return generate_occurrences(usable, start, end)

    async def list_occurrences(
        self,
        user_id: str,
        start: date,
        end: date,
        *,
        today: date | None = None,
    ) -> list[MergedOccurrence]:
        if start > end:
            raise ValueError(f"range start {start} is after range end {end}")
        today = today or self.clock()
        cache_key = (user_id, start, end, today)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached

        rejected: list[RejectedRecord] = []
        bills = await self._load_bills(user_id, rejected)
        computed = self._generate(bills, start, end, rejected)
        # No partial answer if the stored statuses cannot be read
        overrides = await self.store.list_range(user_id, start, end)
        merged = merge_occurrences(computed, overrides, today)
        await self.cache.put(cache_key, merged)
        return merged

    async def get_occurrence(
        self,
        user_id: str,
        key: KeyLike,
        *,
        today: date | None = None,
    ) -> MergedOccurrence:
        """Resolve one occurrence from its key alone, whatever range it falls in."""
        key = OccurrenceKey.coerce(key)
        today = today or self.clock()

        row = await self.ledger.get_bill(user_id, key.bill_id)
        if row is None:
            raise OccurrenceNotFoundError(f"Bill {key.bill_id} not found.")
        bill = parse_bill_row(row)
        scheduled = generate_bill_occurrences(bill, key.due_date, key.due_date, include_inactive=True)
        override = await self.store.get(user_id, key)

        if scheduled:
            occurrence = scheduled[0]
        elif override is not None:
            # The schedule moved after this status was recorded; keep the record reachable.
            occurrence = Occurrence(
                bill_id=bill.id,
                bill_name=bill.name,
                due_date=key.due_date,
                expected_amount=override.expected_amount or bill.amount,
                provider=bill.provider,
                account_id=bill.account_id,
            )
        else:
            raise OccurrenceNotFoundError(f"{bill.name} is not due on {key.due_date.isoformat()}.")
        return merge_occurrence(occurrence, override, today)

    async def _record_payment(self, override: OccurrenceOverride) -> OccurrenceOverride:
        """Link the transaction, then store the paid status; a refused write unlinks it again."""
        transaction_id = override.paid_transaction_id
        if transaction_id:
            await self.ledger.set_transaction_bill(transaction_id, override.bill_id)
        try:
            return await self.store.upsert(override)
        except BillReconcilerError:
            if transaction_id:
                try:
                    await self.ledger.set_transaction_bill(transaction_id, None)
                except BillReconcilerError as exc:
                    logger.error("[RECONCILE] Could not unlink transaction %s: %s", transaction_id, exc)
            raise

    async def mark_paid(
        self,
        user_id: str,
        key: KeyLike,
        *,
        transaction_id: str | None = None,
        confidence: MatchConfidence = MatchConfidence.MANUAL,
        notes: str | None = None,
        today: date | None = None,
    ) -> MergedOccurrence:
        current = await self.get_occurrence(user_id, key, today=today)
        if current.status is OccurrenceStatus.PAID and current.paid_transaction_id == transaction_id:
            return current
        ensure_transition(current.status, OccurrenceStatus.PAID)
        if transaction_id:
            owner = await self.store.find_by_transaction(user_id, transaction_id)
            if owner is not None and owner.key != current.key:
                raise TransactionAlreadyLinkedError(transaction_id, str(owner.key))

        stored = await self._record_payment(OccurrenceOverride(
            user_id=user_id,
            bill_id=current.bill_id,
            due_date=current.due_date,
            status=OccurrenceStatus.PAID,
            expected_amount=current.expected_amount,
            paid_transaction_id=transaction_id,
            paid_at=utc_now(),
            match_confidence=confidence,
            notes=notes,
        ))
        await self._invalidate(user_id)
        logger.info(
            "[RECONCILE] %s marked paid (%s%s).",
            current.id,
            confidence.value,
            f", transaction {transaction_id}" if transaction_id else "",
        )
        return _with_override(current, stored)

    async def skip(
        self,
        user_id: str,
        key: KeyLike,
        *,
        notes: str | None = None,
        today: date | None = None,
    ) -> MergedOccurrence:
        current = await self.get_occurrence(user_id, key, today=today)
        if current.status is OccurrenceStatus.SKIPPED:
            return current
        ensure_transition(current.status, OccurrenceStatus.SKIPPED)

        stored = await self.store.upsert(OccurrenceOverride(
            user_id=user_id,
            bill_id=current.bill_id,
            due_date=current.due_date,
            status=OccurrenceStatus.SKIPPED,
            expected_amount=current.expected_amount,
            notes=notes,
        ))
        await self._invalidate(user_id)
        logger.info("[RECONCILE] %s skipped.", current.id)
        return _with_override(current, stored)

    async def reset(
        self,
        user_id: str,
        key: KeyLike,
        *,
        today: date | None = None,
    ) -> MergedOccurrence:
        """Drop the stored status so the occurrence is due or overdue again.

        The transaction link goes first, so a transaction never points at a
        status record that no longer exists.
        """
        today = today or self.clock()
        current = await self.get_occurrence(user_id, key, today=today)
        override = await self.store.get(user_id, current.key)
        if override is None:
            return current
        ensure_transition(override.status, OccurrenceStatus.DUE)

        if override.paid_transaction_id:
            await self.ledger.set_transaction_bill(override.paid_transaction_id, None)
        await self.store.delete(user_id, current.key)
        await self._invalidate(user_id)
        logger.info("[RECONCILE] %s reset.", current.id)
        return current.model_copy(update={
            "status": resolve_status(current.due_date, None, today),
            "paid_transaction_id": None,
            "paid_at": None,
            "match_confidence": None,
            "notes": None,
        })

    async def _apply_match(
        self,
        user_id: str,
        match: MatchCandidate,
        expected_amount: Decimal | None,
    ) -> bool:
        # Someone may have settled it since we read; never overwrite that.
        existing = await self.store.get(user_id, match.key)
        if existing is not None:
            logger.info(
                "[RECONCILE] %s already %s; not applying transaction %s.",
                match.occurrence_id,
                existing.status.value,
                match.transaction_id,
            )
            return False

        await self._record_payment(OccurrenceOverride(
            user_id=user_id,
            bill_id=match.bill_id,
            due_date=match.due_date,
            status=OccurrenceStatus.PAID,
            expected_amount=expected_amount,
            paid_transaction_id=match.transaction_id,
            paid_at=utc_now(),
            match_confidence=match.confidence,
        ))
        return True

    async def reconcile(
        self,
        user_id: str,
        start: date,
        end: date,
        *,
        apply: bool = True,
        today: date | None = None,
    ) -> ReconciliationReport:
        if start > end:
            raise ValueError(f"range start {start} is after range end {end}")
        today = today or self.clock()
        started = perf_counter()
        report = ReconciliationReport(user_id=user_id, range_start=start, range_end=end, dry_run=not apply)

        bills = await self._load_bills(user_id, report.rejected)
        computed = self._generate(bills, start, end, report.rejected)
        overrides = await self.store.list_range(user_id, start, end)
        merged = merge_occurrences(computed, overrides, today)
        expected = {occ.id: occ.expected_amount for occ in merged}

        transaction_rows = await self.ledger.list_transactions(user_id, start, end)
        transactions = parse_rows(transaction_rows, parse_transaction_row, report.rejected)

        results = await asyncio.to_thread(
            self.matcher.match,
            merged,
            transactions,
            linked_transaction_ids(overrides),
        )
        report.occurrences = len(merged)
        report.open_occurrences = sum(1 for occ in merged if occ.is_open)
        report.transactions = len(transactions)
        report.for_review = results.for_review

        if not apply:
            report.auto_applied = results.auto_apply
        else:
            for match in results.auto_apply:
                try:
                    applied = await self._apply_match(user_id, match, expected.get(match.occurrence_id))
                except BillReconcilerError as exc:
                    logger.error(
                        "[RECONCILE] Could not apply transaction %s to %s: %s",
                        match.transaction_id,
                        match.occurrence_id,
                        exc,
                    )
                    report.failed.append(WriteFailure(
                        occurrence_id=match.occurrence_id,
                        transaction_id=match.transaction_id,
                        error=str(exc),
                    ))
                    continue
                if applied:
                    report.auto_applied.append(match)
                    logger.debug(
                        "[RECONCILE] Auto-applied %s to %s (score %s).",
                        match.transaction_id,
                        match.occurrence_id,
                        match.score,
                    )
            if report.auto_applied or report.failed:
                await self._invalidate(user_id)

        report.duration_seconds = perf_counter() - started
        logger.info(
            "[RECONCILE] User %s %s..%s: %d occurrences (%d open), %d transactions, "
            "%d auto-applied, %d for review, %d failed, %d rejected in %s%s.",
            user_id,
            start.isoformat(),
            end.isoformat(),
            report.occurrences,
            report.open_occurrences,
            report.transactions,
            len(report.auto_applied),
            len(report.for_review),
            len(report.failed),
            len(report.rejected),
            format_duration(report.duration_seconds),
            " (dry run)" if not apply else "",
        )
        return report

    async def diagnose(
        self,
        user_id: str,
        key: KeyLike,
        *,
        today: date | None = None,
    ) -> list[dict[str, Any]]:
        """Per-transaction signal breakdown around one occurrence's due date."""
        current = await self.get_occurrence(user_id, key, today=today)
        window = timedelta(days=DATE_WINDOW_DAYS)
        rows = await self.ledger.list_transactions(
            user_id, current.due_date - window, current.due_date + window
        )
        transactions = parse_rows(rows, parse_transaction_row)
        return diagnose_occurrence(current, transactions, self.matcher)
