import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from oae.core.clock import Clock, utcnow
from oae.core.events import EventBus, SECURITY
from oae.database import transaction
from oae.models.security import SecurityEvent

logger = logging.getLogger(__name__)


def event_payload(ev: SecurityEvent) -> dict:
    return {
        "id": ev.id,
        "at": ev.at.isoformat() if ev.at else None,
        "user_id": ev.user_id,
        "action": ev.action,
        "success": ev.success,
        "details": ev.details,
    }


class SecurityLog:
    """Append-only audit of authorization attempts and privileged actions.

    ``add`` writes inside the caller's transaction so the audit row commits or
    rolls back with the action it describes; ``publish`` is called once that
    transaction has committed.
    """

    def __init__(self, session_factory: async_sessionmaker, events: Optional[EventBus] = None, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.events = events
        self.clock = clock

    def add(self, db: AsyncSession, user_id, action: str, success: bool, details: str = "") -> SecurityEvent:
        ev = SecurityEvent(at=self.clock(), user_id=str(user_id), action=action, success=success, details=details)
        db.add(ev)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"security {action} user={user_id} success={success} {details}".rstrip())
        return ev

    async def publish(self, *evs: SecurityEvent) -> None:
        if not self.events:
            return
        for ev in evs:
            await self.events.publish(SECURITY, event_payload(ev))

    async def record(self, user_id, action: str, success: bool, details: str = "") -> SecurityEvent:
        async with transaction(self.session_factory) as db:
            ev = self.add(db, user_id, action, success, details)
        await self.publish(ev)
        return ev

    async def list(
        self,
        user_id: Optional[str] = None,
        action_prefix: Optional[str] = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        q = select(SecurityEvent)
        if user_id is not None:
            q = q.where(SecurityEvent.user_id == str(user_id))
        if action_prefix:
            q = q.where(SecurityEvent.action.startswith(action_prefix))
        q = q.order_by(SecurityEvent.id.desc()).limit(limit)
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q))
