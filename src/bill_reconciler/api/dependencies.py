from typing import Annotated

from fastapi import Header, HTTPException, Request

from bill_reconciler.errors import (
    BillReconcilerError,
    InvalidRecordError,
    InvalidTransitionError,
    MalformedOccurrenceIdError,
    OccurrenceNotFoundError,
    StorageError,
    TransactionAlreadyLinkedError,
)
from bill_reconciler.services.reconciliation import ReconciliationCoordinator
from bill_reconciler.services.scheduler import ReconciliationScheduler


def get_coordinator(request: Request) -> ReconciliationCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if not coordinator:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return coordinator


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if not scheduler:
        raise HTTPException(status_code=500, detail="Scheduler not initialized")
    return scheduler


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    return user_id


def to_http_error(exc: BillReconcilerError) -> HTTPException:
    if isinstance(exc, MalformedOccurrenceIdError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, OccurrenceNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, TransactionAlreadyLinkedError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidRecordError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, StorageError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
