from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from bill_reconciler.api.dependencies import (
    get_coordinator,
    get_scheduler,
    get_user_id,
    to_http_error,
)
from bill_reconciler.api.schemas import ReconcileRequest
from bill_reconciler.errors import BillReconcilerError
from bill_reconciler.logger import get_logger
from bill_reconciler.models import ReconciliationReport
from bill_reconciler.services.reconciliation import ReconciliationCoordinator
from bill_reconciler.services.scheduler import ReconciliationScheduler

logger = get_logger(__name__)

router = APIRouter(prefix="/api/reconcile")


@router.post("")
async def run_reconciliation(
    request: ReconcileRequest,
    coordinator: Annotated[ReconciliationCoordinator, Depends(get_coordinator)],
    user_id: Annotated[str, Depends(get_user_id)],
) -> ReconciliationReport:
    if request.start_date > request.end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    try:
        return await coordinator.reconcile(
            user_id,
            request.start_date,
            request.end_date,
            apply=request.apply,
        )
    except BillReconcilerError as exc:
        raise to_http_error(exc) from exc


@router.get("/status")
async def get_reconcile_status(
    scheduler: Annotated[ReconciliationScheduler, Depends(get_scheduler)],
) -> dict:
    return scheduler.get_status()


@router.post("/stop")
async def stop_reconciliation(
    scheduler: Annotated[ReconciliationScheduler, Depends(get_scheduler)],
) -> dict[str, str]:
    if scheduler.request_stop():
        logger.info("[SCHEDULER] Stop requested by user.")
        return {"status": "stopping"}
    return {"status": "idle"}
