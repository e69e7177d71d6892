from fastapi import APIRouter, HTTPException, Request

from bill_reconciler.api.schemas import ConfigUpdateRequest
from bill_reconciler.core import configuration

router = APIRouter(prefix="/api/config")


@router.get("")
async def get_config() -> dict:
    return configuration.build_config_view()


@router.post("")
async def update_config(payload: ConfigUpdateRequest, request: Request) -> dict:
    errors, updates = configuration.apply_config_updates(payload.values)
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    configuration.apply_runtime_updates(request.app, updates)
    return {"status": "saved", "updated": sorted(updates)}
