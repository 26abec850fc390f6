"""Follows outbound txids until they are final.

broadcasting payouts (left over from a crash or an unknown broadcast outcome):
    found on chain      -> processing
    unknown to the node -> authorized, signature dropped
    reverted/rejected   -> failed

processing payouts complete once the ledger has seen their txid with
``confirmations >= outbound_finality``.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Mapping, Optional

from oae.chains.base import ChainAdapter, TxInfo
from oae.core.errors import AdapterRejected, OAEError
from oae.core.retry import retry_call
from oae.models.payout import Payout, PayoutStatus
from oae.services.ledger import DetectionLedger
from oae.services.payouts import PayoutManager

logger = logging.getLogger(__name__)


def by_txid(payouts: list[Payout]) -> dict[tuple, list[int]]:
    groups: dict[tuple, list[int]] = defaultdict(list)
    for p in payouts:
        groups[(p.chain, p.txid)].append(p.id)
    return groups


class ReconciliationWorker:
    def __init__(
        self,
        adapters: Mapping[str, ChainAdapter],
        ledger: DetectionLedger,
        payouts: PayoutManager,
        attempt_timeout: float = 10.0,
        budget: Optional[float] = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = adapters
        self.ledger = ledger
        self.payouts = payouts
        self.attempt_timeout = attempt_timeout
        self.budget = budget
        self.sleep = sleep

    async def _lookup(self, adapter: ChainAdapter, txid: str) -> TxInfo:
        return await retry_call(
            lambda: adapter.get_transaction(txid),
            name=f"{adapter.chain} get_transaction {txid}",
            attempt_timeout=self.attempt_timeout,
            budget=self.budget,
            sleep=self.sleep,
        )

    async def resolve_broadcasting(self) -> int:
        resolved = 0
        stuck = await self.payouts.in_status(PayoutStatus.broadcasting)
        for (chain, txid), ids in by_txid(stuck).items():
            adapter = self.adapters.get(chain)
            if adapter is None:
                continue
            if not txid:
                resolved += await self.payouts.return_to_authorized(ids)
                continue
            try:
                info = await self._lookup(adapter, txid)
            except AdapterRejected as e:
                resolved += len(await self.payouts.mark_failed(ids, f"{e.code}: {e.message}"))
                continue
            except OAEError as e:
                logger.warning(f"{chain} {txid}: cannot resolve broadcasting payouts {ids} yet ({e.code})")
                continue
            if info.found:
                resolved += await self.payouts.mark_processing(ids, txid)
            else:
                resolved += await self.payouts.return_to_authorized(ids)
        return resolved

    async def track_processing(self) -> int:
        completed = 0
        for (chain, txid), ids in by_txid(await self.payouts.in_status(PayoutStatus.processing)).items():
            adapter = self.adapters.get(chain)
            if adapter is None or not txid:
                continue
            try:
                info = await self._lookup(adapter, txid)
            except AdapterRejected as e:
                await self.payouts.mark_failed(ids, f"{e.code}: {e.message}", from_status=(PayoutStatus.processing,))
                continue
            except OAEError as e:
                logger.warning(f"{chain} {txid}: confirmation check failed ({e.code})")
                continue
            if not info.found:
                # dropped from the mempool or reorged out; keep watching
                logger.warning(f"{chain} {txid}: processing payouts {ids} not visible on chain")
                continue
            row = await self.ledger.record_outbound(chain, info)
            if row.confirmations >= adapter.params.outbound_finality:
                completed += len(await self.payouts.complete(ids))
        return completed

    async def run_once(self) -> int:
        return await self.resolve_broadcasting() + await self.track_processing()
