import logging
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.core.clock import Clock, utcnow
from oae.core.errors import NotFound
from oae.database import transaction
from oae.models.dead_letter import DeadLetter
from oae.models.payout import SYSTEM_PRINCIPAL
from oae.services.security_log import SecurityLog

logger = logging.getLogger(__name__)


class DeadLetterBox:
    """Work that exhausted its retries, waiting for an operator."""

    def __init__(self, session_factory: async_sessionmaker, security_log: SecurityLog, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.log = security_log
        self.clock = clock

    async def park(self, kind: str, ref_id: int, attempts: int, error: str) -> DeadLetter:
        error = (error or "")[:500]
        async with transaction(self.session_factory) as db:
            row = await db.scalar(
                select(DeadLetter).where(DeadLetter.kind == kind, DeadLetter.ref_id == ref_id).with_for_update()
            )
            if row is None:
                row = DeadLetter(kind=kind, ref_id=ref_id, created_at=self.clock())
                db.add(row)
            row.attempts = attempts
            row.last_error = error
            row.resolved_at = None
            ev = self.log.add(
                db, SYSTEM_PRINCIPAL, "dead_letter", False, f"{kind}:{ref_id} after {attempts} attempts: {error}",
            )
        logger.error(f"Parked {kind} {ref_id} after {attempts} attempts: {error}")
        await self.log.publish(ev)
        return row

    async def is_parked(self, kind: str, ref_id: int) -> bool:
        async with transaction(self.session_factory) as db:
            row = await db.scalar(
                select(DeadLetter.id).where(
                    DeadLetter.kind == kind, DeadLetter.ref_id == ref_id, DeadLetter.resolved_at.is_(None),
                )
            )
        return row is not None

    async def list(self, include_resolved: bool = False, kind: str = None) -> list[DeadLetter]:
        q = select(DeadLetter)
        if not include_resolved:
            q = q.where(DeadLetter.resolved_at.is_(None))
        if kind:
            q = q.where(DeadLetter.kind == kind)
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q.order_by(DeadLetter.id)))

    async def resolve(self, dead_letter_id: int, by: str = SYSTEM_PRINCIPAL) -> DeadLetter:
        """Release a parked item; the owning worker picks it up on its next tick."""
        async with transaction(self.session_factory) as db:
            row = await db.get(DeadLetter, dead_letter_id)
            if row is None:
                raise NotFound(f"dead letter {dead_letter_id} not found")
            ev = None
            if row.resolved_at is None:
                row.resolved_at = self.clock()
                ev = self.log.add(db, by, "dead_letter.resolve", True, f"{row.kind}:{row.ref_id}")
        if ev is not None:
            await self.log.publish(ev)
        return row
