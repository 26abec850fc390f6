from typing import Optional
from fastapi import APIRouter, Depends
from oae.core.deps import get_engine, require_admin
from oae.engine import OnchainActivityEngine
from oae.schemas.rule import AddRuleRequest, RuleResponse, SetEnabledRequest

router = APIRouter(prefix="/api/rules", tags=["rules"])


@router.post("", response_model=RuleResponse, status_code=201)
async def add_rule(
    body: AddRuleRequest,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.rules.add(
        body.chain, body.destination_address, body.percentage_bps, body.label,
        min_threshold=body.min_threshold, max_amount=body.max_amount, by=admin,
    )


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    chain: Optional[str] = None,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.rules.list(chain)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def set_rule_enabled(
    rule_id: int,
    body: SetEnabledRequest,
    admin: str = Depends(require_admin),
    engine: OnchainActivityEngine = Depends(get_engine),
):
    return await engine.rules.set_enabled(rule_id, body.enabled, by=admin)
