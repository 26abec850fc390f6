import asyncio
import logging
from typing import Mapping, Optional
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainAdapter
from oae.core.clock import Clock, utcnow
from oae.core.errors import Conflict, InvalidInput, NotFound
from oae.database import transaction
from oae.models.address import WatchedAddress
from oae.services.security_log import SecurityLog

logger = logging.getLogger(__name__)


class AddressRegistry:
    """The set of receiving addresses we watch, per chain."""

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
        self._write_lock = asyncio.Lock()

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get((chain or "").upper())
        if adapter is None:
            raise InvalidInput(f"unsupported chain: {chain}")
        return adapter

    async def add(self, chain: str, address: str, label: str = "", by: str = "system") -> int:
        adapter = self._adapter(chain)
        canonical = adapter.validate_address(address)
        async with self._write_lock:
            async with transaction(self.session_factory) as db:
                existing = await db.scalar(
                    select(WatchedAddress).where(
                        WatchedAddress.chain == adapter.chain,
                        WatchedAddress.address == canonical,
                    )
                )
                if existing and existing.active:
                    raise Conflict(f"{adapter.chain} address already watched", id=existing.id)
                if existing:
                    existing.active = True
                    existing.deactivated_at = None
                    existing.label = label or existing.label
                    row = existing
                else:
                    row = WatchedAddress(
                        chain=adapter.chain, address=canonical, label=label,
                        added_by=str(by), added_at=self.clock(),
                    )
                    db.add(row)
                await db.flush()
                ev = self.log.add(db, by, "address.add", True, f"{adapter.chain}:{canonical} id={row.id}")
                address_id = row.id
        await self.log.publish(ev)
        logger.info(f"Watching {adapter.chain} address {canonical} ({label or 'no label'})")
        return address_id

    async def deactivate(self, address_id: int, by: str = "system") -> None:
        async with self._write_lock:
            async with transaction(self.session_factory) as db:
                row = await db.get(WatchedAddress, address_id)
                if row is None:
                    raise NotFound(f"address {address_id} not found")
                if not row.active:
                    return
                row.active = False
                row.deactivated_at = self.clock()
                ev = self.log.add(db, by, "address.deactivate", True, f"{row.chain}:{row.address} id={row.id}")
        await self.log.publish(ev)

    async def list_active(self, chain: str) -> list[WatchedAddress]:
        return await self.list(chain, include_inactive=False)

    async def list(self, chain: Optional[str] = None, include_inactive: bool = False) -> list[WatchedAddress]:
        q = select(WatchedAddress)
        if chain:
            q = q.where(WatchedAddress.chain == chain.upper())
        if not include_inactive:
            q = q.where(WatchedAddress.active == True)
        async with transaction(self.session_factory) as db:
            return list(await db.scalars(q.order_by(WatchedAddress.id)))

    async def lookup(self, chain: str, address: str) -> Optional[WatchedAddress]:
        chain = (chain or "").upper()
        adapter = self.adapters.get(chain)
        if adapter is not None:
            try:
                address = adapter.validate_address(address)
            except InvalidInput:
                return None
        async with transaction(self.session_factory) as db:
            return await db.scalar(
                select(WatchedAddress).where(WatchedAddress.chain == chain, WatchedAddress.address == address)
            )

    async def set_watermark(self, address_id: int, height: int) -> bool:
        """Move the watermark forward; it never moves back."""
        async with transaction(self.session_factory) as db:
            result = await db.execute(
                update(WatchedAddress)
                .where(
                    WatchedAddress.id == address_id,
                    or_(WatchedAddress.watermark.is_(None), WatchedAddress.watermark < height),
                )
                .values(watermark=height)
            )
        return result.rowcount > 0
