from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from rapidfuzz import fuzz

from bill_reconciler.core import settings
from bill_reconciler.logger import get_logger
from bill_reconciler.matching.base import Signal
from bill_reconciler.matching.signals import (
    DATE_WINDOW_DAYS,
    DEFAULT_SIGNALS,
    amount_difference,
    bill_labels,
    day_difference,
    find_label_in_text,
    find_provider_alias,
    transaction_texts,
)
from bill_reconciler.models import (
    MatchCandidate,
    MatchConfidence,
    MatchResults,
    MergedOccurrence,
    Transaction,
)

logger = get_logger(__name__)

AUTO_APPLY_THRESHOLD = 80
REVIEW_THRESHOLD = 50

DIAGNOSTIC_AMOUNT_RANGE = Decimal("10.00")


@dataclass(frozen=True)
class MatchConfig:
    auto_apply_threshold: int = AUTO_APPLY_THRESHOLD
    review_threshold: int = REVIEW_THRESHOLD

    def __post_init__(self) -> None:
        if self.review_threshold > self.auto_apply_threshold:
            raise ValueError(
                f"review threshold {self.review_threshold} above auto-apply threshold "
                f"{self.auto_apply_threshold}"
            )

    @classmethod
    def from_env(cls) -> "MatchConfig":
        auto_apply = settings.get_env_int("AUTO_APPLY_THRESHOLD", AUTO_APPLY_THRESHOLD, min_value=0)
        review = settings.get_env_int("REVIEW_THRESHOLD", REVIEW_THRESHOLD, min_value=0)
        if review > auto_apply:
            logger.warning(
                "[MATCH] REVIEW_THRESHOLD=%s above AUTO_APPLY_THRESHOLD=%s; using defaults.",
                review,
                auto_apply,
            )
            return cls()
        return cls(auto_apply_threshold=auto_apply, review_threshold=review)

    def tier(self, score: int) -> MatchConfidence:
        if score >= self.auto_apply_threshold:
            return MatchConfidence.HIGH
        if score >= self.review_threshold:
            return MatchConfidence.MEDIUM
        return MatchConfidence.LOW


DEFAULT_MATCH_CONFIG = MatchConfig()


@dataclass(frozen=True)
class _Scored:
    transaction: Transaction
    score: int
    reasons: tuple[str, ...]
    days: int
    amount_diff: Decimal

    def rank(self) -> tuple[int, int, Decimal, str]:
        return (-self.score, self.days, self.amount_diff, self.transaction.id)


class TransactionMatcher:
    """Pairs open occurrences with bank transactions.

    Stateless between calls; every input, including the set of transactions
    already linked elsewhere, is passed in.
    """

    def __init__(
        self,
        config: MatchConfig = DEFAULT_MATCH_CONFIG,
        signals: Sequence[Signal] = DEFAULT_SIGNALS,
    ) -> None:
        self.config = config
        self.signals = tuple(signals)

    def score(self, occurrence: MergedOccurrence, transaction: Transaction) -> tuple[int, list[str]]:
        total = 0
        reasons: list[str] = []
        for signal in self.signals:
            result = signal.evaluate(occurrence, transaction)
            if result is None:
                continue
            total += result.points
            reasons.append(result.reason)
        return total, reasons

    def _eligible_transactions(
        self,
        transactions: Iterable[Transaction],
        already_linked_ids: Collection[str],
    ) -> dict[str, Transaction]:
        pool: dict[str, Transaction] = {}
        for txn in transactions:
            if txn.id in already_linked_ids or txn.bill_id or txn.pending:
                continue
            pool.setdefault(txn.id, txn)
        return pool

    def best_for(
        self,
        occurrence: MergedOccurrence,
        pool: Iterable[Transaction],
    ) -> _Scored | None:
        best: _Scored | None = None
        for txn in pool:
            score, reasons = self.score(occurrence, txn)
            scored = _Scored(
                transaction=txn,
                score=score,
                reasons=tuple(reasons),
                days=day_difference(occurrence, txn),
                amount_diff=amount_difference(occurrence, txn),
            )
            if best is None or scored.rank() < best.rank():
                best = scored
        return best

    def match(
        self,
        occurrences: Iterable[MergedOccurrence],
        transactions: Iterable[Transaction],
        already_linked_ids: Collection[str] = frozenset(),
    ) -> MatchResults:
        pool = self._eligible_transactions(transactions, already_linked_ids)
        open_occurrences = sorted(
            (occ for occ in occurrences if occ.is_open),
            key=lambda occ: (occ.due_date, occ.bill_id),
        )
        results = MatchResults()

        for occurrence in open_occurrences:
            if not pool:
                break
            best = self.best_for(occurrence, pool.values())
            if best is None:
                continue
            tier = self.config.tier(best.score)
            if tier is MatchConfidence.LOW:
                continue

            candidate = MatchCandidate(
                occurrence_id=occurrence.id,
                bill_id=occurrence.bill_id,
                due_date=occurrence.due_date,
                transaction_id=best.transaction.id,
                score=best.score,
                confidence=tier,
                reasons=list(best.reasons),
            )
            # Claimed for this pass either way; no transaction is offered twice.
            del pool[best.transaction.id]
            if tier is MatchConfidence.HIGH:
                results.auto_apply.append(candidate)
            else:
                results.for_review.append(candidate)

        logger.debug(
            "[MATCH] %d open occurrences, %d auto-apply, %d for review.",
            len(open_occurrences),
            len(results.auto_apply),
            len(results.for_review),
        )
        return results


def match_transactions(
    occurrences: Iterable[MergedOccurrence],
    transactions: Iterable[Transaction],
    already_linked_ids: Collection[str] = frozenset(),
    *,
    config: MatchConfig = DEFAULT_MATCH_CONFIG,
) -> MatchResults:
    return TransactionMatcher(config).match(occurrences, transactions, already_linked_ids)


def diagnose_occurrence(
    occurrence: MergedOccurrence,
    transactions: Iterable[Transaction],
    matcher: TransactionMatcher | None = None,
) -> list[dict[str, Any]]:
    """Signal breakdown for every transaction that is plausibly this bill.

    Ignores link and pending filters so a user can see why something was not picked.
    """
    matcher = matcher or TransactionMatcher()
    labels = bill_labels(occurrence)
    rows: list[dict[str, Any]] = []
    for txn in transactions:
        amount_diff = amount_difference(occurrence, txn)
        days = day_difference(occurrence, txn)
        if amount_diff > DIAGNOSTIC_AMOUNT_RANGE or days > DATE_WINDOW_DAYS:
            continue
        texts = transaction_texts(txn)
        score, reasons = matcher.score(occurrence, txn)
        similarity = max(
            (fuzz.token_set_ratio(label, text) for label in labels for text in texts),
            default=0.0,
        )
        rows.append({
            "transaction_id": txn.id,
            "amount_diff": str(amount_diff),
            "days_diff": days,
            "description_match": find_label_in_text(labels, texts) or find_provider_alias(labels, texts),
            "description_similarity": round(similarity, 1),
            "account_match": bool(occurrence.account_id) and txn.account_id == occurrence.account_id,
            "pending": txn.pending,
            "linked_bill_id": txn.bill_id,
            "score": score,
            "confidence": matcher.config.tier(score).value,
            "reasons": reasons,
        })
    rows.sort(key=lambda row: (-row["score"], row["days_diff"], row["transaction_id"]))
    return rows
