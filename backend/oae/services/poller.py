"""Per-chain poller: watched addresses in, ledger records out."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from oae.chains.base import ChainAdapter, Observation
from oae.core.errors import OAEError, StorageUnavailable
from oae.core.retry import TokenBucket, backoff_delay, retry_call
from oae.models.address import WatchedAddress
from oae.services.address_registry import AddressRegistry
from oae.services.ledger import DetectionLedger

logger = logging.getLogger(__name__)


def next_watermark(tip: int, safety_margin: int, observed: list[Observation], current: Optional[int] = None) -> int:
    """Where the next scan of an address may start.

    Capped by the highest height seen in this scan; mempool outputs count as
    the tip and heights at or below ``current`` were acknowledged earlier.
    """
    safe = max(tip - safety_margin, 0)
    floor = current if current is not None else -1
    heights = [
        o.block_height if o.block_height is not None else tip
        for o in observed
        if o.block_height is None or o.block_height > floor
    ]
    if not heights:
        return safe
    return min(safe, max(heights))


class ChainPoller:
    def __init__(
        self,
        adapter: ChainAdapter,
        registry: AddressRegistry,
        ledger: DetectionLedger,
        concurrency: int = 4,
        rate_per_sec: float = 5.0,
        burst: int = 10,
        attempt_timeout: float = 10.0,
        budget: Optional[float] = 60.0,
        interval: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.registry = registry
        self.ledger = ledger
        self.semaphore = asyncio.Semaphore(concurrency)
        self.bucket = TokenBucket(rate_per_sec, burst)
        self.attempt_timeout = attempt_timeout
        self.budget = budget
        self.interval = interval if interval is not None else adapter.params.poll_interval
        self.sleep = sleep
        # observations the ledger could not take, replayed next cycle
        self.pending: dict[tuple, Observation] = {}
        self._stop = asyncio.Event()

    @property
    def chain(self) -> str:
        return self.adapter.chain

    async def _call(self, fn, name: str):
        async def limited():
            async with self.semaphore:
                await self.bucket.acquire()
                return await fn()

        return await retry_call(
            limited, name=f"{self.chain} {name}",
            attempt_timeout=self.attempt_timeout, budget=self.budget, sleep=self.sleep,
        )

    async def _record_all(self, observations: list[Observation]) -> bool:
        """Hand observations to the ledger in order; False if any had to be kept back."""
        ok = True
        for obs in observations:
            try:
                await self.ledger.record(obs)
                self.pending.pop(obs.key, None)
            except StorageUnavailable as e:
                logger.warning(f"{self.chain} {obs.txid}:{obs.vout} kept for retry: {e.message}")
                self.pending[obs.key] = obs
                ok = False
        return ok

    async def _scan(self, addr: WatchedAddress, tip: int) -> bool:
        try:
            observations = await self._call(
                lambda: self.adapter.get_inbound(addr.address, addr.watermark), f"inbound {addr.address}",
            )
        except OAEError as e:
            logger.warning(f"{self.chain} scan of {addr.address} failed: {e.code}: {e.message}")
            return False
        if not await self._record_all(observations):
            return False
        mark = next_watermark(tip, self.adapter.params.safety_margin, observations, addr.watermark)
        if mark > 0 and (addr.watermark is None or mark > addr.watermark):
            await self.registry.set_watermark(addr.id, mark)
        return True

    async def poll_once(self) -> int:
        """One cycle. Returns the number of addresses scanned cleanly."""
        if self.pending:
            await self._record_all(list(self.pending.values()))
        addresses = await self.registry.list_active(self.chain)
        if not addresses:
            return 0
        tip = await self._call(self.adapter.current_tip, "tip")
        results = await asyncio.gather(*(self._scan(addr, tip) for addr in addresses))
        return sum(1 for ok in results if ok)

    async def run(self) -> None:
        logger.info(f"{self.chain} poller started, every {self.interval}s")
        failures = 0
        while not self._stop.is_set():
            try:
                await self.poll_once()
                failures = 0
                delay = self.interval
            except OAEError as e:
                failures += 1
                delay = max(self.interval, backoff_delay(failures))
                logger.warning(f"{self.chain} poll cycle failed ({e.code}: {e.message}), next in {delay:.1f}s")
            except Exception:
                failures += 1
                delay = max(self.interval, backoff_delay(failures))
                logger.exception(f"{self.chain} poll cycle crashed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{self.chain} poller stopped")

    def stop(self) -> None:
        self._stop.set()
