from datetime import date

from pydantic import BaseModel, field_validator

from bill_reconciler.models import MatchConfidence

# A person confirming a payment either entered it by hand or accepted a suggested match.
PAY_CONFIDENCES = (MatchConfidence.MANUAL, MatchConfidence.HIGH, MatchConfidence.MEDIUM)


class PayRequest(BaseModel):
    transaction_id: str | None = None
    confidence: MatchConfidence = MatchConfidence.MANUAL
    notes: str | None = None

    @field_validator("confidence")
    @classmethod
    def _confirmed_confidence(cls, value: MatchConfidence) -> MatchConfidence:
        if value not in PAY_CONFIDENCES:
            allowed = ", ".join(option.value for option in PAY_CONFIDENCES)
            raise ValueError(f"confidence must be one of: {allowed}")
        return value


class SkipRequest(BaseModel):
    notes: str | None = None


class ReconcileRequest(BaseModel):
    start_date: date
    end_date: date
    apply: bool = True


class ConfigUpdateRequest(BaseModel):
    values: dict[str, str]
