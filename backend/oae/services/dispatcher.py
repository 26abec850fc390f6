"""Deposit notifications.

Work comes from the store, not from memory: every confirmed deposit with no
``notified_at`` and no open dead letter is due. ``notified_at`` is set by a
conditional update after the sink accepted the notice, so a replayed delta
finds the column already set and does nothing.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.core.clock import Clock, utcnow
from oae.core.errors import OAEError
from oae.core.events import EventBus, DEPOSIT_CONFIRMED
from oae.core.retry import retry_call
from oae.database import transaction
from oae.models.address import WatchedAddress
from oae.models.dead_letter import DeadLetter
from oae.models.deposit import Deposit, DepositState
from oae.services.dead_letters import DeadLetterBox
from oae.services.notifier import NotificationSink

logger = logging.getLogger(__name__)

DEAD_LETTER_KIND = "notification"


def deposit_payload(dep: Deposit, label: str = "") -> dict:
    return {
        "deposit_id": dep.id,
        "chain": dep.chain,
        "txid": dep.txid,
        "vout": dep.vout,
        "address": dep.address,
        "label": label,
        "amount": str(dep.amount),
        "block_height": dep.block_height,
        "confirmations": dep.confirmations,
    }


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        sink: NotificationSink,
        dead_letters: DeadLetterBox,
        events: Optional[EventBus] = None,
        max_retries: int = 5,
        attempt_timeout: float = 10.0,
        budget: Optional[float] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.dead_letters = dead_letters
        self.events = events
        self.max_retries = max_retries
        self.attempt_timeout = attempt_timeout
        self.budget = budget
        self.clock = clock
        self.sleep = sleep

    async def pending(self, limit: int = 50) -> list[int]:
        parked = select(DeadLetter.ref_id).where(
            DeadLetter.kind == DEAD_LETTER_KIND, DeadLetter.resolved_at.is_(None),
        )
        q = (
            select(Deposit.id)
            .where(
                Deposit.state == DepositState.confirmed,
                Deposit.notified_at.is_(None),
                Deposit.id.not_in(parked),
            )
            .order_by(Deposit.id)
            .limit(limit)
        )
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q))

    async def dispatch(self, deposit_id: int) -> bool:
        """Notify about one deposit. Returns False when there was nothing to do."""
        async with transaction(self.session_factory) as db:
            dep = await db.get(Deposit, deposit_id)
            if dep is None or dep.notified_at is not None or dep.state != DepositState.confirmed:
                return False
            watched = await db.scalar(
                select(WatchedAddress).where(
                    WatchedAddress.chain == dep.chain, WatchedAddress.address == dep.address,
                )
            )
        payload = deposit_payload(dep, watched.label if watched else "")
        recipients = [watched.added_by] if watched else []

        attempts = 0

        async def _send():
            nonlocal attempts
            attempts += 1
            await self.sink.send(payload, recipients)

        try:
            await retry_call(
                _send,
                name=f"notify deposit {deposit_id}",
                max_attempts=self.max_retries + 1,
                attempt_timeout=self.attempt_timeout,
                budget=self.budget,
                sleep=self.sleep,
            )
        except OAEError as e:
            await self.dead_letters.park(DEAD_LETTER_KIND, deposit_id, attempts, f"{e.code}: {e.message}")
            return False

        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(Deposit)
                .where(
                    Deposit.id == deposit_id,
                    Deposit.notified_at.is_(None),
                    Deposit.state == DepositState.confirmed,
                )
                .values(notified_at=self.clock())
            )
        if result.rowcount == 0:
            return False
        logger.info(f"Notified deposit {deposit_id} ({dep.chain} {dep.txid}:{dep.vout})")
        if self.events:
            await self.events.publish(DEPOSIT_CONFIRMED, payload)
        return True

    async def run_once(self) -> int:
        done = 0
        for deposit_id in await self.pending():
            if await self.dispatch(deposit_id):
                done += 1
        return done
