from fastapi import APIRouter, Depends, Query
from oae.core.deps import get_current_principal, get_engine
from oae.core.errors import Conflict
from oae.engine import OnchainActivityEngine
from oae.schemas.security import (
    ChangePinRequest, PinStatusResponse, SecurityEventResponse, SetPinRequest,
)

router = APIRouter(prefix="/api/security", tags=["security"])


@router.get("/pin", response_model=PinStatusResponse)
async def pin_status(
    principal: str = Depends(get_current_principal),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.security.status(principal)


@router.put("/pin", status_code=204)
async def set_pin(
    body: SetPinRequest,
    principal: str = Depends(get_current_principal),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    """First-time PIN setup. Replacing an existing PIN goes through /pin/change."""
    if await engine.security.has_pin(principal):
        raise Conflict("PIN already set; use change")
    await engine.security.set_pin(principal, body.pin)


@router.post("/pin/change", status_code=204)
async def change_pin(
    body: ChangePinRequest,
    principal: str = Depends(get_current_principal),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    await engine.security.change_pin(principal, body.old_pin, body.new_pin)


@router.get("/events", response_model=list[SecurityEventResponse])
async def my_events(
    limit: int = Query(50, ge=1, le=500),
    principal: str = Depends(get_current_principal),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.security_log.list(user_id=principal, limit=limit)
