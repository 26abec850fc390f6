from decimal import Decimal
from typing import Mapping, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainAdapter
from oae.core.amounts import to_amount
from oae.core.clock import Clock, utcnow
from oae.core.errors import InvalidInput, NotFound, PolicyViolation
from oae.database import transaction
from oae.models.rule import AutoSettlementRule
from oae.services.security_log import SecurityLog
from oae.services.settlement import BPS_DENOMINATOR


class RuleBook:
    """Auto-settlement rules. Enabled rules on one chain never add up to more than 100%."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        adapters: Mapping[str, ChainAdapter],
        security_log: SecurityLog,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.adapters = adapters
        self.log = security_log
        self.clock = clock

    async def _enabled_bps(self, db, chain: str, exclude_id: Optional[int] = None) -> int:
        q = select(func.coalesce(func.sum(AutoSettlementRule.percentage_bps), 0)).where(
            AutoSettlementRule.chain == chain, AutoSettlementRule.enabled == True,
        )
        if exclude_id is not None:
            q = q.where(AutoSettlementRule.id != exclude_id)
        return int(await db.scalar(q))

    async def add(
        self,
        chain: str,
        destination: str,
        percentage_bps: int,
        label: str = "",
        min_threshold=None,
        max_amount=None,
        by: str = "system",
    ) -> AutoSettlementRule:
        adapter = self.adapters.get((chain or "").upper())
        if adapter is None:
            raise InvalidInput(f"unsupported chain: {chain}")
        destination = adapter.validate_address(destination)
        if isinstance(percentage_bps, bool) or not isinstance(percentage_bps, int):
            raise InvalidInput("percentage_bps must be an integer")
        if not 0 <= percentage_bps <= BPS_DENOMINATOR:
            raise InvalidInput(f"percentage_bps must be between 0 and {BPS_DENOMINATOR}")
        min_threshold = to_amount(min_threshold, "min_threshold", allow_none=True) or Decimal(0)
        max_amount = to_amount(max_amount, "max_amount", allow_none=True)
        if max_amount is not None and max_amount <= 0:
            raise InvalidInput("max_amount must be positive")

        async with transaction(self.session_factory) as db:
            total = await self._enabled_bps(db, adapter.chain)
            if total + percentage_bps > BPS_DENOMINATOR:
                raise PolicyViolation(
                    f"{adapter.chain} rules would settle {total + percentage_bps} bps, above {BPS_DENOMINATOR}",
                )
            rule = AutoSettlementRule(
                chain=adapter.chain,
                destination_address=destination,
                percentage_bps=percentage_bps,
                label=label,
                enabled=True,
                min_threshold=min_threshold,
                max_amount=max_amount,
                created_at=self.clock(),
            )
            db.add(rule)
            await db.flush()
            ev = self.log.add(
                db, by, "rule.add", True, f"{adapter.chain} id={rule.id} {percentage_bps}bps -> {destination}",
            )
        await self.log.publish(ev)
        return rule

    async def list(self, chain: Optional[str] = None) -> list[AutoSettlementRule]:
        q = select(AutoSettlementRule)
        if chain:
            q = q.where(AutoSettlementRule.chain == chain.upper())
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q.order_by(AutoSettlementRule.id)))

    async def set_enabled(self, rule_id: int, enabled: bool, by: str = "system") -> AutoSettlementRule:
        async with transaction(self.session_factory) as db:
            rule = await db.get(AutoSettlementRule, rule_id, with_for_update=True)
            if rule is None:
                raise NotFound(f"rule {rule_id} not found")
            if rule.enabled == enabled:
                return rule
            if enabled:
                total = await self._enabled_bps(db, rule.chain, exclude_id=rule.id)
                if total + rule.percentage_bps > BPS_DENOMINATOR:
                    raise PolicyViolation(
                        f"{rule.chain} rules would settle {total + rule.percentage_bps} bps, above {BPS_DENOMINATOR}",
                    )
            rule.enabled = enabled
            ev = self.log.add(db, by, "rule.enable" if enabled else "rule.disable", True, f"id={rule.id}")
        await self.log.publish(ev)
        return rule
