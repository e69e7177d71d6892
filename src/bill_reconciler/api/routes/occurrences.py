from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from bill_reconciler.api.dependencies import get_coordinator, get_user_id, to_http_error
from bill_reconciler.api.schemas import PayRequest, SkipRequest
from bill_reconciler.domain.dates import month_bounds
from bill_reconciler.errors import BillReconcilerError
from bill_reconciler.models import MergedOccurrence
from bill_reconciler.services.reconciliation import ReconciliationCoordinator

router = APIRouter(prefix="/api/occurrences")

Coordinator = Annotated[ReconciliationCoordinator, Depends(get_coordinator)]
UserId = Annotated[str, Depends(get_user_id)]


def _resolve_range(
    start_date: date | None,
    end_date: date | None,
    year: int | None,
    month: int | None,
) -> tuple[date, date]:
    if start_date and end_date:
        if start_date > end_date:
            raise HTTPException(status_code=400, detail="start_date must not be after end_date")
        return start_date, end_date
    if year is not None and month is not None:
        return month_bounds(year, month)
    raise HTTPException(status_code=400, detail="Provide start_date and end_date, or year and month")


@router.get("")
async def list_occurrences(
    coordinator: Coordinator,
    user_id: UserId,
    start_date: date | None = None,
    end_date: date | None = None,
    year: Annotated[int | None, Query(ge=1, le=9999)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
) -> dict:
    start, end = _resolve_range(start_date, end_date, year, month)
    try:
        occurrences = await coordinator.list_occurrences(user_id, start, end)
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc
    return {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "occurrences": [occurrence.model_dump(mode="json") for occurrence in occurrences],
    }


@router.get("/{occurrence_id}")
async def get_occurrence(
    occurrence_id: str,
    coordinator: Coordinator,
    user_id: UserId,
) -> MergedOccurrence:
    try:
        return await coordinator.get_occurrence(user_id, occurrence_id)
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc


@router.get("/{occurrence_id}/candidates")
async def occurrence_candidates(
    occurrence_id: str,
    coordinator: Coordinator,
    user_id: UserId,
) -> dict:
    try:
        candidates = await coordinator.diagnose(user_id, occurrence_id)
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc
    return {"occurrence_id": occurrence_id, "candidates": candidates}


@router.post("/{occurrence_id}/pay")
async def pay_occurrence(
    occurrence_id: str,
    coordinator: Coordinator,
    user_id: UserId,
    request: PayRequest | None = None,
) -> MergedOccurrence:
    request = request or PayRequest()
    try:
        return await coordinator.mark_paid(
            user_id,
            occurrence_id,
            transaction_id=request.transaction_id,
            confidence=request.confidence,
            notes=request.notes,
        )
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc


@router.post("/{occurrence_id}/skip")
async def skip_occurrence(
    occurrence_id: str,
    coordinator: Coordinator,
    user_id: UserId,
    request: SkipRequest | None = None,
) -> MergedOccurrence:
    notes = request.notes if request else None
    try:
        return await coordinator.skip(user_id, occurrence_id, notes=notes)
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc


@router.post("/{occurrence_id}/reset")
async def reset_occurrence(
    occurrence_id: str,
    coordinator: Coordinator,
    user_id: UserId,
) -> MergedOccurrence:
    try:
        return await coordinator.reset(user_id, occurrence_id)
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc
