"""Detection ledger: one row per deposit key, one confirmation state machine per row.

``record`` is idempotent on (chain, txid, vout). Each call is a single short
transaction and its StateDelta is handed to listeners only after commit.

    seen --block--> confirming --threshold--> confirmed
      confirming/confirmed --reorg--> orphaned --new block--> confirming

``confirmations`` never decreases except on the move to ``orphaned``.
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainParams, Observation, TxInfo
from oae.core.clock import Clock, utcnow
from oae.core.errors import Conflict, InvalidInput, NotFound
from oae.database import transaction
from oae.models.deposit import Deposit, DepositState, OutboundTx

logger = logging.getLogger(__name__)


class DeltaKind(str, enum.Enum):
    NEW = "new"
    ADVANCED = "advanced"
    CONFIRMED = "confirmed"
    ORPHANED = "orphaned"
    NOOP = "noop"


@dataclass(frozen=True)
class StateDelta:
    kind: DeltaKind
    deposit_id: int
    chain: str
    txid: str
    vout: int
    state: DepositState
    previous_state: Optional[DepositState]
    confirmations: int


def apply_observation(dep: Deposit, obs: Observation, params: ChainParams) -> DeltaKind:
    """Advance ``dep`` in place from ``obs``; returns what happened."""
    if dep.state == DepositState.orphaned:
        if obs.block_height is None or obs.confirmations <= 0:
            return DeltaKind.NOOP
        dep.block_height = obs.block_height
        dep.confirmations = obs.confirmations
        dep.state = DepositState.confirming
        if dep.confirmations >= params.notify_threshold:
            dep.state = DepositState.confirmed
            return DeltaKind.CONFIRMED
        return DeltaKind.ADVANCED

    if obs.confirmations < dep.confirmations:
        if (
            dep.state in (DepositState.confirming, DepositState.confirmed)
            and obs.confirmations < params.orphan_threshold
            and obs.block_height is not None
            and obs.block_height != dep.block_height
        ):
            dep.state = DepositState.orphaned
            dep.confirmations = obs.confirmations
            dep.block_height = obs.block_height
            return DeltaKind.ORPHANED
        # stale view from a lagging backend, or a replayed mempool sighting
        return DeltaKind.NOOP

    changed = False
    if obs.confirmations > dep.confirmations:
        dep.confirmations = obs.confirmations
        changed = True
    if obs.block_height is not None and obs.block_height != dep.block_height:
        dep.block_height = obs.block_height
        changed = True
    if dep.state == DepositState.seen and dep.block_height is not None:
        dep.state = DepositState.confirming
        changed = True
    if dep.state == DepositState.confirming and dep.confirmations >= params.notify_threshold:
        dep.state = DepositState.confirmed
        return DeltaKind.CONFIRMED
    return DeltaKind.ADVANCED if changed else DeltaKind.NOOP


class DetectionLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        params: Mapping[str, ChainParams],
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.params = params
        self.clock = clock
        # key -> [lock, callers holding or waiting]
        self._locks: dict[tuple, list] = {}
        self._listeners: list[Callable[[StateDelta], None]] = []

    def on_delta(self, listener: Callable[[StateDelta], None]) -> None:
        self._listeners.append(listener)

    def _lock_for(self, key: tuple) -> asyncio.Lock:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        return entry[0]

    def _release_slot(self, key: tuple) -> None:
        entry = self._locks[key]
        entry[1] -= 1
        if entry[1] == 0:
            del self._locks[key]

    async def record(self, obs: Observation) -> StateDelta:
        params = self.params.get(obs.chain)
        if params is None:
            raise InvalidInput(f"unsupported chain: {obs.chain}")
        lock = self._lock_for(obs.key)
        try:
            async with lock:
                try:
                    delta = await self._record(obs, params)
                except Conflict:
                    # lost an insert race on the deposit key; apply as an update
                    delta = await self._record(obs, params)
        finally:
            self._release_slot(obs.key)

        if delta.kind != DeltaKind.NOOP:
            logger.info(
                f"{obs.chain} {obs.txid}:{obs.vout} {delta.kind.value} "
                f"state={delta.state.value} conf={delta.confirmations}"
            )
        for listener in self._listeners:
            listener(delta)
        return delta

    async def _record(self, obs: Observation, params: ChainParams) -> StateDelta:
        async with transaction(self.session_factory) as db:
            dep = await db.scalar(
                select(Deposit)
                .where(Deposit.chain == obs.chain, Deposit.txid == obs.txid, Deposit.vout == obs.vout)
                .with_for_update()
            )
            if dep is None:
                dep = Deposit(
                    chain=obs.chain,
                    txid=obs.txid,
                    vout=obs.vout,
                    address=obs.address,
                    amount=obs.amount,
                    first_seen_at=self.clock(),
                    block_height=None,
                    confirmations=0,
                    state=DepositState.seen,
                )
                apply_observation(dep, obs, params)
                db.add(dep)
                await db.flush()
                kind, previous = DeltaKind.NEW, None
            else:
                previous = dep.state
                kind = apply_observation(dep, obs, params)
            delta = StateDelta(
                kind=kind,
                deposit_id=dep.id,
                chain=dep.chain,
                txid=dep.txid,
                vout=dep.vout,
                state=dep.state,
                previous_state=previous,
                confirmations=dep.confirmations,
            )
        return delta

    async def record_outbound(self, chain: str, info: TxInfo) -> OutboundTx:
        """Refresh the ledger's view of a txid we broadcast."""
        async with transaction(self.session_factory) as db:
            row = await db.scalar(
                select(OutboundTx).where(OutboundTx.chain == chain, OutboundTx.txid == info.txid).with_for_update()
            )
            if row is None:
                row = OutboundTx(chain=chain, txid=info.txid, confirmations=0)
                db.add(row)
            if info.block_height != row.block_height and info.confirmations < (row.confirmations or 0):
                # re-mined elsewhere
                row.confirmations = info.confirmations
            else:
                row.confirmations = max(row.confirmations or 0, info.confirmations)
            row.block_height = info.block_height
            row.last_checked_at = self.clock()
            await db.flush()
        return row

    async def get(self, deposit_id: int) -> Deposit:
        async with transaction(self.session_factory) as db:
            dep = await db.get(Deposit, deposit_id)
        if dep is None:
            raise NotFound(f"deposit {deposit_id} not found")
        return dep

    async def list(
        self,
        chain: Optional[str] = None,
        state: Optional[str] = None,
        address: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Deposit]:
        q = select(Deposit)
        if chain:
            q = q.where(Deposit.chain == chain.upper())
        if state:
            try:
                q = q.where(Deposit.state == DepositState(state))
            except ValueError as e:
                raise InvalidInput(f"unknown deposit state: {state}") from e
        if address:
            q = q.where(Deposit.address == address)
        q = q.order_by(Deposit.id.desc()).limit(limit).offset(offset)
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q))
