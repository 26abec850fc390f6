from typing import Optional
from fastapi import APIRouter, Depends, Query
from oae.core.deps import get_engine, require_admin
from oae.engine import OnchainActivityEngine
from oae.schemas.deposit import DepositResponse

router = APIRouter(prefix="/api/deposits", tags=["deposits"])


@router.get("", response_model=list[DepositResponse])
async def list_deposits(
    chain: Optional[str] = None,
    state: Optional[str] = None,
    address: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.deposits.list(chain, state, address, limit, offset)


@router.get("/{deposit_id}", response_model=DepositResponse)
async def get_deposit(
    deposit_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.deposits.get(deposit_id)
