from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, Query
from oae.core.deps import get_current_principal, get_engine, require_admin
from oae.engine import OnchainActivityEngine
from oae.models.payout import PayoutPriority
from oae.schemas.payout import (
    AuthorizeRequest, CreateBatchRequest, CreatePayoutRequest, FeeEstimateResponse, PayoutResponse,
)

router = APIRouter(prefix="/api/payouts", tags=["payouts"])


@router.post("", response_model=PayoutResponse, status_code=201)
async def create_payout(
    body: CreatePayoutRequest,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.create(
        body.chain, body.to_address, body.amount, notes=body.notes,
        priority=body.priority.value, by=admin, scheduled_at=body.scheduled_at,
    )


@router.post("/batch", response_model=list[PayoutResponse], status_code=201)
async def create_batch(
    body: CreateBatchRequest,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.create_batch(
        body.chain, [item.model_dump() for item in body.items], priority=body.priority.value, by=admin,
    )


@router.get("", response_model=list[PayoutResponse])
async def list_payouts(
    chain: Optional[str] = None,
    status: Optional[str] = None,
    created_by: Optional[str] = None,
    batch_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.list(chain, status, created_by, batch_id, limit, offset)


@router.get("/fee-estimate", response_model=FeeEstimateResponse)
async def estimate_fee(
    chain: str,
    amount: Decimal = Query(gt=0),
    priority: PayoutPriority = PayoutPriority.normal,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    fee = await engine.payouts.estimate_fee(chain, amount, priority.value)
    return FeeEstimateResponse(chain=chain.upper(), amount=amount, priority=priority, fee=fee.amount, rate=fee.rate)


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.get(payout_id)


@router.post("/{payout_id}/authorize", response_model=PayoutResponse)
async def authorize_payout(
    payout_id: int,
    body: AuthorizeRequest,
    principal: str = Depends(get_current_principal),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    """PIN gate; the bearer principal must know their PIN and be the creator or an admin."""
    payout = await engine.payouts.authorize(payout_id, principal, body.pin)
    engine.payout_worker.wake()
    return payout


@router.post("/{payout_id}/cancel", response_model=PayoutResponse)
async def cancel_payout(
    payout_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.cancel(payout_id, by=admin)


@router.post("/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(
    payout_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.retry(payout_id, by=admin)


@router.post("/{payout_id}/clone", response_model=PayoutResponse, status_code=201)
async def clone_payout(
    payout_id: int,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.payouts.clone(payout_id, by=admin)
