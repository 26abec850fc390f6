"""Automatic settlement of confirmed deposits.

For a confirmed deposit of amount A on chain c, every enabled rule of c is
applied in ascending id order:

    share = floor(A * bps / 10000)    at the chain's precision
    share = min(share, max_amount)    when the rule has a cap

Rules whose ``min_threshold`` exceeds A and shares under the dust floor are
skipped. Whatever is left stays in the source wallet. Payouts, ``settled_at``
and the settlement_executions row commit together.
"""
import logging
import secrets
from decimal import Decimal, ROUND_DOWN
from typing import Mapping
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainParams
from oae.core.clock import Clock, utcnow
from oae.core.errors import Conflict
from oae.database import transaction
from oae.models.deposit import Deposit, DepositState
from oae.models.payout import Payout, PayoutStatus, PayoutPriority, SYSTEM_PRINCIPAL
from oae.models.rule import AutoSettlementRule, SettlementExecution

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


def compute_share(amount: Decimal, bps: int, quantum: Decimal = Decimal("0.00000001")) -> Decimal:
    return (Decimal(amount) * bps / BPS_DENOMINATOR).quantize(quantum, rounding=ROUND_DOWN)


def new_batch_id() -> str:
    return secrets.token_hex(16)


class SettlementEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        params: Mapping[str, ChainParams],
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.params = params
        self.clock = clock

    async def pending(self, limit: int = 50) -> list[int]:
        q = (
            select(Deposit.id)
            .where(Deposit.state == DepositState.confirmed, Deposit.settled_at.is_(None))
            .order_by(Deposit.id)
            .limit(limit)
        )
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q))

    async def settle(self, deposit_id: int) -> list[Payout]:
        """Fan one confirmed deposit out to its chain's rules.

        Returns the payouts created, empty when the deposit was already settled
        or no rule produced a share.
        """
        try:
            return await self._settle(deposit_id)
        except Conflict:
            # another worker settled it first
            logger.info(f"Deposit {deposit_id} already settled")
            return []

    async def _settle(self, deposit_id: int) -> list[Payout]:
        now = self.clock()
        async with transaction(self.session_factory) as db:
            dep = await db.get(Deposit, deposit_id, with_for_update=True)
            if dep is None or dep.settled_at is not None or dep.state != DepositState.confirmed:
                return []
            params = self.params.get(dep.chain)
            quantum = params.quantum if params else Decimal("0.00000001")
            dust = params.dust_floor if params else Decimal(0)

            rules = list(await db.scalars(
                select(AutoSettlementRule)
                .where(AutoSettlementRule.chain == dep.chain, AutoSettlementRule.enabled == True)
                .order_by(AutoSettlementRule.id)
            ))

            amount = Decimal(dep.amount)
            remaining = amount
            batch_id = new_batch_id()
            payouts = []
            for rule in rules:
                if rule.min_threshold and amount < rule.min_threshold:
                    continue
                share = compute_share(amount, rule.percentage_bps, quantum)
                if rule.max_amount is not None and share > rule.max_amount:
                    share = Decimal(rule.max_amount)
                if share < dust or share <= 0:
                    logger.info(f"Deposit {dep.id}: rule {rule.id} share {share} below dust floor {dust}")
                    continue
                if share > remaining:
                    logger.warning(f"Deposit {dep.id}: rule {rule.id} share {share} exceeds remaining {remaining}")
                    continue
                remaining -= share
                payout = Payout(
                    chain=dep.chain,
                    to_address=rule.destination_address,
                    amount=share,
                    priority=PayoutPriority.normal,
                    status=PayoutStatus.pending,
                    created_by=SYSTEM_PRINCIPAL,
                    created_at=now,
                    notes=f"auto:{rule.label}",
                    batch_id=batch_id,
                    source_deposit_id=dep.id,
                    rule_id=rule.id,
                )
                db.add(payout)
                payouts.append(payout)

            result = await db.execute(
                update(Deposit)
                .where(Deposit.id == dep.id, Deposit.settled_at.is_(None))
                .values(settled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise Conflict(f"deposit {dep.id} already settled")
            db.add(SettlementExecution(
                deposit_id=dep.id,
                chain=dep.chain,
                deposit_amount=amount,
                total_settled=amount - remaining,
                residual=remaining,
                rules_applied=len(payouts),
                batch_id=batch_id if payouts else None,
                executed_at=now,
            ))
            await db.flush()

        logger.info(
            f"Settled deposit {deposit_id}: {len(payouts)} payout(s), "
            f"{amount - remaining} {dep.chain} out, {remaining} residual"
        )
        return payouts

    async def run_once(self) -> int:
        done = 0
        for deposit_id in await self.pending():
            if await self.settle(deposit_id):
                done += 1
        return done
