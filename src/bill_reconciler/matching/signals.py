from decimal import Decimal

from rapidfuzz.utils import default_process

from bill_reconciler.matching.base import Signal, SignalResult
from bill_reconciler.matching.providers import PROVIDER_ALIASES
from bill_reconciler.models import MergedOccurrence, Transaction

AMOUNT_EXACT_EPSILON = Decimal("0.005")
AMOUNT_CLOSE_TOLERANCE = Decimal("1.00")
AMOUNT_LOOSE_TOLERANCE = Decimal("5.00")
AMOUNT_EXACT_POINTS = 40
AMOUNT_CLOSE_POINTS = 25
AMOUNT_LOOSE_POINTS = 10

DATE_EXACT_POINTS = 30
DATE_ADJACENT_POINTS = 20
DATE_CLOSE_DAYS = 2
DATE_CLOSE_POINTS = 15
DATE_NEAR_DAYS = 3
DATE_NEAR_POINTS = 10
DATE_WINDOW_DAYS = 7
DATE_WINDOW_POINTS = 5

DESCRIPTION_MATCH_POINTS = 30
DESCRIPTION_OVERLAP_POINTS = 15
MIN_TOKEN_LENGTH = 3

ACCOUNT_MATCH_POINTS = 10


def normalize_text(value: str | None) -> str:
    """Lower-case, punctuation to spaces, runs of whitespace collapsed."""
    if not value:
        return ""
    return " ".join(default_process(value).split())


def tokens(value: str) -> set[str]:
    return {token for token in value.split() if len(token) >= MIN_TOKEN_LENGTH}


def amount_difference(occurrence: MergedOccurrence, transaction: Transaction) -> Decimal:
    # Outgoings are stored negative; bills are positive.
    return abs(abs(transaction.amount) - occurrence.expected_amount)


def day_difference(occurrence: MergedOccurrence, transaction: Transaction) -> int:
    return abs((transaction.date - occurrence.due_date).days)


def bill_labels(occurrence: MergedOccurrence) -> list[str]:
    labels = []
    for raw in (occurrence.provider, occurrence.bill_name):
        label = normalize_text(raw)
        if label and label not in labels:
            labels.append(label)
    return labels


def transaction_texts(transaction: Transaction) -> list[str]:
    texts = []
    for raw in (transaction.description, transaction.merchant):
        text = normalize_text(raw)
        if text and text not in texts:
            texts.append(text)
    return texts


def _contains(haystack: str, needle: str) -> bool:
    """Whitespace-insensitive containment; very short needles must be a whole word."""
    if len(needle.replace(" ", "")) < MIN_TOKEN_LENGTH:
        return needle in haystack.split()
    return needle.replace(" ", "") in haystack.replace(" ", "")


def find_label_in_text(labels: list[str], texts: list[str]) -> str | None:
    for label in labels:
        for text in texts:
            if _contains(text, label) or _contains(label, text):
                return label
    return None


def find_provider_alias(labels: list[str], texts: list[str]) -> str | None:
    for provider, aliases in PROVIDER_ALIASES.items():
        label_hit = any(
            _contains(label, provider) or _contains(provider, label)
            or any(_contains(label, alias) for alias in aliases)
            for label in labels
        )
        if not label_hit:
            continue
        if any(_contains(text, alias) for alias in aliases for text in texts):
            return provider
    return None


class AmountSignal(Signal):
    name = "amount"

    def evaluate(
        self, occurrence: MergedOccurrence, transaction: Transaction
    ) -> SignalResult | None:
        diff = amount_difference(occurrence, transaction)
        if diff <= AMOUNT_EXACT_EPSILON:
            return SignalResult(AMOUNT_EXACT_POINTS, "Exact amount match")
        if diff <= AMOUNT_CLOSE_TOLERANCE:
            return SignalResult(AMOUNT_CLOSE_POINTS, f"Amount within ±{AMOUNT_CLOSE_TOLERANCE}")
        if diff <= AMOUNT_LOOSE_TOLERANCE:
            return SignalResult(AMOUNT_LOOSE_POINTS, f"Amount within ±{AMOUNT_LOOSE_TOLERANCE}")
        return None


class DateSignal(Signal):
    name = "date"

    def evaluate(
        self, occurrence: MergedOccurrence, transaction: Transaction
    ) -> SignalResult | None:
        days = day_difference(occurrence, transaction)
        if days == 0:
            return SignalResult(DATE_EXACT_POINTS, "Exact date match")
        if days == 1:
            return SignalResult(DATE_ADJACENT_POINTS, "Within 1 day of due date")
        if days == DATE_CLOSE_DAYS:
            return SignalResult(DATE_CLOSE_POINTS, f"Within {days} days of due date")
        if days <= DATE_NEAR_DAYS:
            return SignalResult(DATE_NEAR_POINTS, f"Within {days} days of due date")
        if days <= DATE_WINDOW_DAYS:
            return SignalResult(DATE_WINDOW_POINTS, f"Within {days} days of due date")
        return None


class DescriptionSignal(Signal):
    name = "description"

    def evaluate(
        self, occurrence: MergedOccurrence, transaction: Transaction
    ) -> SignalResult | None:
        labels = bill_labels(occurrence)
        texts = transaction_texts(transaction)
        if not labels or not texts:
            return None

        label = find_label_in_text(labels, texts)
        if label:
            return SignalResult(DESCRIPTION_MATCH_POINTS, f"Description match: {label}")

        provider = find_provider_alias(labels, texts)
        if provider:
            return SignalResult(DESCRIPTION_MATCH_POINTS, f"Provider match: {provider}")

        label_tokens = set().union(*(tokens(label) for label in labels))
        text_tokens = set().union(*(tokens(text) for text in texts))
        shared = sorted(label_tokens & text_tokens)
        if shared:
            return SignalResult(DESCRIPTION_OVERLAP_POINTS, f"Shared words: {', '.join(shared)}")
        return None


class AccountSignal(Signal):
    name = "account"

    def evaluate(
        self, occurrence: MergedOccurrence, transaction: Transaction
    ) -> SignalResult | None:
        if occurrence.account_id and transaction.account_id == occurrence.account_id:
            return SignalResult(ACCOUNT_MATCH_POINTS, "Account match")
        return None


DEFAULT_SIGNALS: tuple[Signal, ...] = (
    AmountSignal(),
    DateSignal(),
    DescriptionSignal(),
    AccountSignal(),
)
