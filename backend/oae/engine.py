"""Composition root: builds every component from injected configuration and runs the workers."""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, Mapping, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.chains.base import ChainAdapter, Signer
from oae.chains.factory import build_adapters
from oae.chains.signer import RemoteSigner
from oae.config import Settings
from oae.core.clock import Clock, utcnow
from oae.core.events import EventBus
from oae.models.deposit import DepositState
from oae.services.address_registry import AddressRegistry
from oae.services.dead_letters import DeadLetterBox
from oae.services.dispatcher import NotificationDispatcher
from oae.services.ledger import DeltaKind, DetectionLedger, StateDelta
from oae.services.notifier import LogSink, NotificationSink, TelegramSink
from oae.services.payouts import PayoutManager
from oae.services.pin import PinService
from oae.services.poller import ChainPoller
from oae.services.reconciliation import ReconciliationWorker
from oae.services.rules import RuleBook
from oae.services.security_log import SecurityLog
from oae.services.settlement import SettlementEngine
from oae.services.workers import Worker

logger = logging.getLogger(__name__)


class OnchainActivityEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        adapters: Mapping[str, ChainAdapter],
        signer: Optional[Signer] = None,
        sink: Optional[NotificationSink] = None,
        *,
        signer_handles: Optional[Mapping[str, str]] = None,
        approvers: Optional[Callable[[], Iterable[str]]] = None,
        poll_concurrency: int = 4,
        rate_per_sec: float = 5.0,
        burst: int = 10,
        attempt_timeout: float = 10.0,
        budget: Optional[float] = 60.0,
        notify_max_retries: int = 5,
        payout_max_retries: int = 3,
        pin_max_attempts: int = 5,
        pin_lockout: timedelta = timedelta(minutes=15),
        worker_interval: float = 5.0,
        schedule_check_sec: int = 30,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.adapters = dict(adapters)
        self.signer = signer
        self.sink = sink or LogSink()
        self.params = {chain: adapter.params for chain, adapter in self.adapters.items()}
        self.worker_interval = worker_interval
        self.schedule_check_sec = schedule_check_sec

        self.events = EventBus()
        self.security_log = SecurityLog(session_factory, self.events, clock)
        self.security = PinService(
            session_factory, self.security_log, max_attempts=pin_max_attempts, lockout=pin_lockout, clock=clock,
        )
        self.dead_letters = DeadLetterBox(session_factory, self.security_log, clock)
        self.addresses = AddressRegistry(session_factory, self.adapters, self.security_log, clock)
        self.deposits = DetectionLedger(session_factory, self.params, clock)
        self.rules = RuleBook(session_factory, self.adapters, self.security_log, clock)
        self.payouts = PayoutManager(
            session_factory, self.adapters, self.security, self.security_log,
            signer=signer, events=self.events, signer_handles=signer_handles, approvers=approvers,
            max_retries=payout_max_retries, attempt_timeout=attempt_timeout, budget=budget, clock=clock, sleep=sleep,
        )
        self.settlement = SettlementEngine(session_factory, self.params, clock)
        self.dispatcher = NotificationDispatcher(
            session_factory, self.sink, self.dead_letters, self.events,
            max_retries=notify_max_retries, attempt_timeout=attempt_timeout, clock=clock, sleep=sleep,
        )
        self.reconciliation = ReconciliationWorker(
            self.adapters, self.deposits, self.payouts, attempt_timeout=attempt_timeout, budget=budget, sleep=sleep,
        )
        self.pollers = [
            ChainPoller(
                adapter, self.addresses, self.deposits,
                concurrency=poll_concurrency, rate_per_sec=rate_per_sec, burst=burst,
                attempt_timeout=attempt_timeout, budget=budget, sleep=sleep,
            )
            for adapter in self.adapters.values()
        ]

        self.dispatch_worker = Worker("dispatcher", self.dispatcher.run_once, worker_interval)
        self.settlement_worker = Worker("settlement", self._settle_step, worker_interval)
        self.payout_worker = Worker("payouts", self._payout_step, worker_interval)
        self.reconciliation_worker = Worker("reconciliation", self.reconciliation.run_once, worker_interval)
        self.deposits.on_delta(self._on_delta)

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: async_sessionmaker) -> "OnchainActivityEngine":
        signer = RemoteSigner(settings.SIGNER_URL, settings.SIGNER_TOKEN) if settings.SIGNER_URL else None
        if settings.TELEGRAM_BOT_TOKEN:
            sink = TelegramSink(settings.TELEGRAM_BOT_TOKEN, settings.TELEGRAM_ADMIN_CHAT_ID)
        else:
            sink = LogSink()
        return cls(
            session_factory,
            build_adapters(settings),
            signer,
            sink,
            signer_handles=settings.signer_handles,
            approvers=lambda: settings.admin_ids,
            poll_concurrency=settings.POLL_CONCURRENCY,
            rate_per_sec=settings.ADAPTER_RATE_PER_SEC,
            burst=settings.ADAPTER_BURST,
            attempt_timeout=settings.ADAPTER_TIMEOUT_SEC,
            budget=settings.ADAPTER_BUDGET_SEC,
            notify_max_retries=settings.NOTIFY_MAX_RETRIES,
            payout_max_retries=settings.PAYOUT_MAX_RETRIES,
            pin_max_attempts=settings.PIN_MAX_ATTEMPTS,
            pin_lockout=timedelta(minutes=settings.PIN_LOCKOUT_MINUTES),
            worker_interval=settings.WORKER_INTERVAL_SEC,
            schedule_check_sec=settings.SCHEDULE_CHECK_SEC,
        )

    def _on_delta(self, delta: StateDelta) -> None:
        if delta.state == DepositState.confirmed and delta.kind in (DeltaKind.NEW, DeltaKind.CONFIRMED):
            self.dispatch_worker.wake()
            self.settlement_worker.wake()

    async def _settle_step(self) -> int:
        done = await self.settlement.run_once()
        if done:
            self.payout_worker.wake()
        return done

    async def _payout_step(self) -> int:
        await self.payouts.authorize_system()
        return await self.payouts.broadcast_ready()

    @property
    def workers(self) -> list[Worker]:
        return [self.dispatch_worker, self.settlement_worker, self.payout_worker, self.reconciliation_worker]

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        if self.signer is None:
            logger.warning("No signer configured: payouts will stay authorized until one is")
        for poller in self.pollers:
            self._tasks.append(asyncio.create_task(poller.run(), name=f"poller-{poller.chain}"))
        for worker in self.workers:
            self._tasks.append(asyncio.create_task(worker.run(), name=f"worker-{worker.name}"))
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.payouts.promote_due, "interval", seconds=self.schedule_check_sec,
            id="promote_scheduled_payouts", max_instances=1, coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Engine started: chains={','.join(self.adapters)} workers={len(self.workers)}")

    async def stop(self) -> None:
        """Refuse new work, let current steps finish, then close outbound clients."""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        for poller in self.pollers:
            poller.stop()
        for worker in self.workers:
            worker.stop()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        await self.aclose()
        logger.info("Engine stopped")

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.sink.aclose()
        if self.signer is not None and hasattr(self.signer, "aclose"):
            await self.signer.aclose()
