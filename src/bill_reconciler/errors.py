class BillReconcilerError(Exception):
    """Base class for errors raised by the reconciler."""


class InvalidRecordError(BillReconcilerError):
    """A stored row could not be turned into a domain object."""

    def __init__(self, kind: str, record_id: str | None, reason: str) -> None:
        self.kind = kind
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Invalid {kind} {record_id or '<no id>'}: {reason}")


class InvalidBillError(InvalidRecordError):
    def __init__(self, bill_id: str | None, reason: str) -> None:
        super().__init__("bill", bill_id, reason)


class MalformedOccurrenceIdError(BillReconcilerError, ValueError):
    def __init__(self, raw: str, reason: str) -> None:
        self.raw = raw
        self.reason = reason
        super().__init__(f"Malformed occurrence id {raw!r}: {reason}")


class OccurrenceNotFoundError(BillReconcilerError):
    pass


class InvalidTransitionError(BillReconcilerError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move occurrence from '{current}' to '{target}'; reset it first.")


class TransactionAlreadyLinkedError(BillReconcilerError):
    def __init__(self, transaction_id: str, occurrence_id: str) -> None:
        self.transaction_id = transaction_id
        self.occurrence_id = occurrence_id
        super().__init__(f"Transaction {transaction_id} already pays {occurrence_id}; reset that occurrence first.")


class StorageError(BillReconcilerError):
    """Durable storage could not be read or written."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)
