"""Payout state machine.

    scheduled --due--> pending --authorize--> authorized --broadcast--> broadcasting
    broadcasting --accepted--> processing --finality--> completed
    broadcasting --rejected--> failed
    pending/authorized/scheduled --cancel--> cancelled
    scheduled/authorized --retry--> pending        (bounded by max_retries)
    failed --clone--> new pending payout

Every transition is a conditional UPDATE on the current status, so two
workers racing on the same row cannot both win.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional
from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainAdapter, Fee, PayoutDraft, SignedTx, Signer
from oae.core.amounts import to_amount
from oae.core.clock import Clock, as_utc, utcnow
from oae.core.errors import (
    AdapterRejected, Conflict, Forbidden, InvalidInput, NotFound, OAEError, PolicyViolation,
)
from oae.core.events import EventBus, PAYOUT_COMPLETED, PAYOUT_FAILED
from oae.core.retry import retry_call
from oae.database import transaction
from oae.models.payout import (
    Payout, PayoutStatus, PayoutPriority, PRIORITY_RANK, SYSTEM_PRINCIPAL,
)
from oae.services.pin import PinService
from oae.services.security_log import SecurityLog
from oae.services.settlement import new_batch_id

logger = logging.getLogger(__name__)

CANCELLABLE = (PayoutStatus.pending, PayoutStatus.authorized, PayoutStatus.scheduled)
RETRYABLE_STATUSES = (PayoutStatus.scheduled, PayoutStatus.authorized)

priority_order = case(
    {p: rank for p, rank in PRIORITY_RANK.items()},
    value=Payout.priority,
)


def payout_payload(p: Payout) -> dict:
    return {
        "payout_id": p.id,
        "chain": p.chain,
        "to_address": p.to_address,
        "amount": str(p.amount),
        "status": p.status.value if p.status else None,
        "txid": p.txid,
        "created_by": p.created_by,
        "batch_id": p.batch_id,
        "source_deposit_id": p.source_deposit_id,
        "last_error": p.last_error,
    }


def parse_priority(priority) -> PayoutPriority:
    try:
        return PayoutPriority(priority or PayoutPriority.normal)
    except ValueError as e:
        raise InvalidInput(f"unknown priority: {priority}") from e


class PayoutManager:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        adapters: Mapping[str, ChainAdapter],
        pins: PinService,
        security_log: SecurityLog,
        signer: Optional[Signer] = None,
        events: Optional[EventBus] = None,
        signer_handles: Optional[Mapping[str, str]] = None,
        approvers: Optional[Callable[[], Iterable[str]]] = None,
        max_retries: int = 3,
        attempt_timeout: float = 10.0,
        budget: Optional[float] = 60.0,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.adapters = adapters
        self.pins = pins
        self.log = security_log
        self.signer = signer
        self.events = events
        self.signer_handles = dict(signer_handles or {})
        # principals that may release payouts they did not create
        self.approvers = approvers or (lambda: ())
        self.max_retries = max_retries
        self.attempt_timeout = attempt_timeout
        self.budget = budget
        self.clock = clock
        self.sleep = sleep
        # payouts whose broadcast call has not returned yet
        self.in_flight: set[int] = set()

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get((chain or "").upper())
        if adapter is None:
            raise InvalidInput(f"unsupported chain: {chain}")
        return adapter

    def signer_handle(self, chain: str) -> str:
        return self.signer_handles.get(chain, f"{chain.lower()}-hot")

    async def _call(self, fn, name: str):
        return await retry_call(
            fn, name=name, attempt_timeout=self.attempt_timeout, budget=self.budget, sleep=self.sleep,
        )

    def _validate_output(self, adapter: ChainAdapter, to_address: str, amount) -> tuple[str, Decimal]:
        to_address = adapter.validate_address(to_address)
        amount = to_amount(amount)
        if amount <= 0:
            raise InvalidInput("amount must be positive")
        if amount != amount.quantize(adapter.params.quantum, rounding=ROUND_DOWN):
            raise InvalidInput(f"amount has more than {adapter.params.decimals} decimals")
        if amount < adapter.params.dust_floor:
            raise PolicyViolation(f"amount {amount} is below the {adapter.chain} dust floor {adapter.params.dust_floor}")
        return to_address, amount

    # ------------------------------------------------------------------
    # Operator-facing operations
    # ------------------------------------------------------------------

    async def create(
        self,
        chain: str,
        to_address: str,
        amount,
        notes: str = "",
        priority: str = "normal",
        by: str = SYSTEM_PRINCIPAL,
        scheduled_at: Optional[datetime] = None,
    ) -> Payout:
        adapter = self._adapter(chain)
        to_address, amount = self._validate_output(adapter, to_address, amount)
        prio = parse_priority(priority)
        now = self.clock()
        scheduled_at = as_utc(scheduled_at)
        status = PayoutStatus.scheduled if scheduled_at and scheduled_at > now else PayoutStatus.pending

        async with transaction(self.session_factory) as db:
            payout = Payout(
                chain=adapter.chain, to_address=to_address, amount=amount, priority=prio,
                status=status, created_by=str(by), created_at=now, notes=notes or "",
                scheduled_at=scheduled_at if status == PayoutStatus.scheduled else None,
            )
            db.add(payout)
            await db.flush()
            ev = self.log.add(
                db, by, "payout.create", True,
                f"id={payout.id} {amount} {adapter.chain} -> {to_address} {status.value}",
            )
        await self.log.publish(ev)
        logger.info(f"Payout {payout.id} created by {by}: {amount} {adapter.chain} -> {to_address} ({status.value})")
        return payout

    async def create_batch(
        self,
        chain: str,
        items: Iterable[dict],
        priority: str = "normal",
        by: str = SYSTEM_PRINCIPAL,
    ) -> List[Payout]:
        """Create several pending payouts sharing one batch id."""
        adapter = self._adapter(chain)
        prio = parse_priority(priority)
        outputs = []
        for item in items:
            to_address, amount = self._validate_output(adapter, item.get("to_address"), item.get("amount"))
            outputs.append((to_address, amount, item.get("notes") or ""))
        if not outputs:
            raise InvalidInput("batch is empty")

        now = self.clock()
        batch_id = new_batch_id()
        async with transaction(self.session_factory) as db:
            payouts = [
                Payout(
                    chain=adapter.chain, to_address=to_address, amount=amount, priority=prio,
                    status=PayoutStatus.pending, created_by=str(by), created_at=now,
                    notes=notes, batch_id=batch_id,
                )
                for to_address, amount, notes in outputs
            ]
            db.add_all(payouts)
            await db.flush()
            ev = self.log.add(
                db, by, "payout.create_batch", True,
                f"batch={batch_id} {len(payouts)} payouts ids={','.join(str(p.id) for p in payouts)}",
            )
        await self.log.publish(ev)
        return payouts

    def may_authorize(self, principal: str, payout: Payout) -> bool:
        return principal == payout.created_by or principal in set(self.approvers())

    async def authorize(self, payout_id: int, principal, pin: str) -> Payout:
        """PIN gate: pending -> authorized.

        Only the payout's creator or an approver may release it. Every outcome
        is audited.
        """
        principal = str(principal)
        try:
            await self.pins.verify(principal, pin)
        except OAEError as e:
            await self.log.record(principal, "payout.authorize", False, f"id={payout_id} {e.code}")
            raise

        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id)
            if payout is not None and not self.may_authorize(principal, payout):
                result = None
            else:
                result = await db.execute(
                    update(Payout)
                    .where(Payout.id == payout_id, Payout.status == PayoutStatus.pending)
                    .values(status=PayoutStatus.authorized)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    ev = self.log.add(db, principal, "payout.authorize", True, f"id={payout_id}")
                payout = await db.get(Payout, payout_id, populate_existing=True)

        if result is None:
            await self.log.record(principal, "payout.authorize", False, f"id={payout_id} not_approver")
            raise Forbidden(f"{principal} may not authorize payout {payout_id}")
        if not result.rowcount:
            reason = "not_found" if payout is None else f"status={payout.status.value}"
            await self.log.record(principal, "payout.authorize", False, f"id={payout_id} {reason}")
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            raise Conflict(f"payout {payout_id} is {payout.status.value}, not pending")
        await self.log.publish(ev)
        logger.info(f"Payout {payout_id} authorized by {principal}")
        return payout

    async def authorize_system(self) -> int:
        """Settlement payouts skip the PIN gate but still pass through authorized."""
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(Payout)
                .where(Payout.status == PayoutStatus.pending, Payout.created_by == SYSTEM_PRINCIPAL)
                .values(status=PayoutStatus.authorized)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Authorized {result.rowcount} system payout(s)")
        return result.rowcount

    async def _transition(
        self,
        payout_id: int,
        allowed: tuple,
        action: str,
        by: str,
        **values,
    ) -> Payout:
        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id, with_for_update=True)
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            if payout.status not in allowed:
                raise Conflict(f"cannot {action.split('.')[-1]} payout {payout_id} in status {payout.status.value}")
            for key, value in values.items():
                setattr(payout, key, value(payout) if callable(value) else value)
            ev = self.log.add(db, by, action, True, f"id={payout_id} -> {payout.status.value}")
        await self.log.publish(ev)
        logger.info(f"Payout {payout_id} {action.split('.')[-1]} by {by}: now {payout.status.value}")
        return payout

    async def cancel(self, payout_id: int, by: str = SYSTEM_PRINCIPAL) -> Payout:
        return await self._transition(payout_id, CANCELLABLE, "payout.cancel", by, status=PayoutStatus.cancelled)

    async def retry(self, payout_id: int, by: str = SYSTEM_PRINCIPAL) -> Payout:
        payout = await self.get(payout_id)
        if payout.status in RETRYABLE_STATUSES and payout.retry_count >= self.max_retries:
            raise PolicyViolation(f"payout {payout_id} reached {self.max_retries} retries")
        return await self._transition(
            payout_id, RETRYABLE_STATUSES, "payout.retry", by,
            status=PayoutStatus.pending,
            retry_count=lambda p: p.retry_count + 1,
            scheduled_at=None,
            last_error=None,
        )

    async def clone(self, payout_id: int, by: str = SYSTEM_PRINCIPAL) -> Payout:
        """Copy a failed payout into a fresh pending one."""
        source = await self.get(payout_id)
        if source.status != PayoutStatus.failed:
            raise Conflict(f"only failed payouts can be cloned; {payout_id} is {source.status.value}")
        notes = f"clone of #{source.id}" + (f": {source.notes}" if source.notes else "")
        return await self.create(
            source.chain, source.to_address, source.amount, notes=notes[:500],
            priority=source.priority.value, by=by,
        )

    async def get(self, payout_id: int) -> Payout:
        async with transaction(self.session_factory) as db:
            payout = await db.get(Payout, payout_id)
        if payout is None:
            raise NotFound(f"payout {payout_id} not found")
        return payout

    async def list(
        self,
        chain: Optional[str] = None,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Payout]:
        q = select(Payout)
        if chain:
            q = q.where(Payout.chain == chain.upper())
        if status:
            try:
                q = q.where(Payout.status == PayoutStatus(status))
            except ValueError as e:
                raise InvalidInput(f"unknown payout status: {status}") from e
        if created_by:
            q = q.where(Payout.created_by == str(created_by))
        if batch_id:
            q = q.where(Payout.batch_id == batch_id)
        q = q.order_by(Payout.id.desc()).limit(limit).offset(offset)
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q))

    async def estimate_fee(self, chain: str, amount, priority: str = "normal") -> Fee:
        adapter = self._adapter(chain)
        amount = to_amount(amount)
        prio = parse_priority(priority)
        return await self._call(lambda: adapter.estimate_fee(amount, prio.value), f"{adapter.chain} estimate_fee")

    # ------------------------------------------------------------------
    # Worker steps
    # ------------------------------------------------------------------

    async def promote_due(self) -> int:
        """scheduled -> pending for every payout whose time has come."""
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(Payout)
                .where(Payout.status == PayoutStatus.scheduled, Payout.scheduled_at <= self.clock())
                .values(status=PayoutStatus.pending)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Promoted {result.rowcount} scheduled payout(s) to pending")
        return result.rowcount

    async def broadcast_ready(self, limit: int = 50) -> int:
        """Sign and broadcast authorized payouts, highest priority first."""
        if self.signer is None:
            return 0
        async with transaction(self.session_factory) as db:
            ready = list(await db.scalars(
                select(Payout)
                .where(Payout.status == PayoutStatus.authorized)
                .order_by(priority_order, Payout.id)
                .limit(limit)
            ))

        groups: "OrderedDict[tuple, List[Payout]]" = OrderedDict()
        for payout in ready:
            adapter = self.adapters.get(payout.chain)
            if adapter is None:
                logger.warning(f"Payout {payout.id}: no adapter for {payout.chain}")
                continue
            if adapter.params.supports_batch and payout.batch_id:
                key = (payout.chain, payout.batch_id)
            else:
                key = (payout.chain, f"single:{payout.id}")
            groups.setdefault(key, []).append(payout)

        sent = 0
        for (chain, _), group in groups.items():
            if await self._broadcast_group(self.adapters[chain], group):
                sent += len(group)
        return sent

    async def _broadcast_group(self, adapter: ChainAdapter, group: List[Payout]) -> bool:
        ids = [p.id for p in group]
        priority = min((p.priority for p in group), key=lambda p: PRIORITY_RANK[p])
        outputs = [(p.to_address, Decimal(p.amount)) for p in group]
        total = sum((amount for _, amount in outputs), Decimal(0))
        label = f"{adapter.chain} payout(s) {ids}"

        try:
            fee = await self._call(lambda: adapter.estimate_fee(total, priority.value), f"{label} estimate_fee")
            draft = PayoutDraft(
                chain=adapter.chain, signer_handle=self.signer_handle(adapter.chain), outputs=outputs,
                priority=priority.value, fee=fee.amount, payout_ids=ids,
            )
            signed = await self._call(lambda: self.signer.sign(adapter.chain, draft), f"{label} sign")
        except AdapterRejected as e:
            await self.mark_failed(ids, f"{e.code}: {e.message}", from_status=(PayoutStatus.authorized,))
            return False
        except OAEError as e:
            logger.warning(f"{label}: not signed, will retry ({e.code}: {e.message})")
            await self._note_error(ids, f"{e.code}: {e.message}")
            return False

        fee_share = (fee.amount / len(ids)).quantize(adapter.params.quantum, rounding=ROUND_DOWN)
        self.in_flight.update(ids)
        try:
            if not await self._begin_broadcast(ids, signed, fee_share):
                return False
            try:
                txid = await self._call(lambda: adapter.broadcast(signed), f"{label} broadcast")
            except AdapterRejected as e:
                await self.mark_failed(ids, f"{e.code}: {e.message}", from_status=(PayoutStatus.broadcasting,))
                return False
            except OAEError as e:
                # outcome unknown; reconciliation decides
                logger.warning(f"{label}: broadcast outcome unknown, left broadcasting ({e.code}: {e.message})")
                await self._note_error(ids, f"{e.code}: {e.message}")
                return False
            await self.mark_processing(ids, txid or signed.txid)
            return True
        finally:
            self.in_flight.difference_update(ids)

    async def _begin_broadcast(self, ids: List[int], signed: SignedTx, fee_share: Decimal) -> bool:
        """authorized -> broadcasting for the whole group, or for none of it."""
        try:
            async with transaction(self.session_factory) as db:
                result = await db.execute(
                    update(Payout)
                    .where(Payout.id.in_(ids), Payout.status == PayoutStatus.authorized)
                    .values(status=PayoutStatus.broadcasting, txid=signed.txid, signed_tx=signed.raw, fee=fee_share)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(ids):
                    raise Conflict(f"payouts {ids} changed while signing")
        except Conflict as e:
            logger.warning(f"{e.message}; signature discarded")
            return False
        logger.info(f"Payouts {ids} broadcasting as {signed.txid}")
        return True

    async def _note_error(self, ids: List[int], error: str) -> None:
        async with transaction(self.session_factory) as db:
            await db.execute(
                update(Payout)
                .where(Payout.id.in_(ids))
                .values(last_error=error[:500])
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Reconciliation hooks
    # ------------------------------------------------------------------

    async def in_status(self, status: PayoutStatus, exclude_in_flight: bool = True) -> List[Payout]:
        async with transaction(self.session_factory) as db:
            rows = list(await db.scalars(
                select(Payout).where(Payout.status == status).order_by(Payout.id)
            ))
        if exclude_in_flight:
            rows = [p for p in rows if p.id not in self.in_flight]
        return rows

    async def mark_processing(self, ids: List[int], txid: str) -> int:
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(Payout)
                .where(Payout.id.in_(ids), Payout.status == PayoutStatus.broadcasting)
                .values(status=PayoutStatus.processing, txid=txid, last_error=None)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Payouts {ids} processing, txid {txid}")
        return result.rowcount

    async def return_to_authorized(self, ids: List[int]) -> int:
        """The chain never saw the broadcast: drop the signature and queue it again."""
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(Payout)
                .where(Payout.id.in_(ids), Payout.status == PayoutStatus.broadcasting)
                .values(status=PayoutStatus.authorized, txid=None, signed_tx=None)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.warning(f"Payouts {ids} not found on chain, back to authorized")
        return result.rowcount

    async def _finish(self, ids: List[int], from_status: tuple, kind: str, **values) -> List[Payout]:
        async with transaction(self.session_factory) as db:
            rows = list(await db.scalars(
                select(Payout).where(Payout.id.in_(ids), Payout.status.in_(from_status)).with_for_update()
            ))
            for payout in rows:
                for key, value in values.items():
                    setattr(payout, key, value)
        if self.events:
            for payout in rows:
                await self.events.publish(kind, payout_payload(payout))
        return rows

    async def mark_failed(
        self,
        ids: List[int],
        error: str,
        from_status: tuple = (PayoutStatus.authorized, PayoutStatus.broadcasting),
    ) -> List[Payout]:
        rows = await self._finish(
            ids, from_status, PAYOUT_FAILED,
            status=PayoutStatus.failed, last_error=error[:500], processed_at=self.clock(),
        )
        for payout in rows:
            logger.error(f"Payout {payout.id} failed: {error}")
        return rows

    async def complete(self, ids: List[int]) -> List[Payout]:
        rows = await self._finish(
            ids, (PayoutStatus.processing,), PAYOUT_COMPLETED,
            status=PayoutStatus.completed, processed_at=self.clock(),
        )
        for payout in rows:
            logger.info(f"Payout {payout.id} completed ({payout.txid})")
        return rows
