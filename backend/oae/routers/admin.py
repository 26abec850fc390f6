from typing import Optional
from fastapi import APIRouter, Depends, Query
from oae.core.deps import get_engine, require_admin
from oae.engine import OnchainActivityEngine
from oae.schemas.security import DeadLetterResponse, PinStatusResponse, SecurityEventResponse

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
async def list_dead_letters(
    include_resolved: bool = False,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.dead_letters.list(include_resolved=include_resolved)


@router.post("/dead-letters/{dead_letter_id}/resolve", response_model=DeadLetterResponse)
async def resolve_dead_letter(
    dead_letter_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    row = await engine.dead_letters.resolve(dead_letter_id, by=admin)
    engine.dispatch_worker.wake()
    return row


@router.get("/security-events", response_model=list[SecurityEventResponse])
async def security_events(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.security_log.list(user_id=user_id, action_prefix=action, limit=limit)


@router.get("/pins/{user_id}", response_model=PinStatusResponse)
async def user_pin_status(
    user_id: str,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.security.status(user_id)


@router.delete("/pins/{user_id}", status_code=204)
async def remove_user_pin(
    user_id: str,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    await engine.security.remove_pin(user_id, by=admin)
