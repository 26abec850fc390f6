import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from oae.chains.base import ChainAdapter, Fee, Observation, PayoutDraft, SignedTx, Signer, TxInfo
from oae.chains.factory import DEFAULT_PARAMS
from oae.core.errors import AdapterUnavailable, InvalidAddress
from oae.database import Base
from oae.engine import OnchainActivityEngine
from oae.services.notifier import NotificationSink
import oae.models  # noqa: F401 - register all models


class FakeClock:
    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAdapter(ChainAdapter):
    """Scripted chain: inbound outputs per address, a tip, known transactions."""

    def __init__(self, params):
        self.params = params
        self.tip = 1000
        self.inbound: dict[str, dict[tuple, Observation]] = {}
        self.txs: dict[str, TxInfo] = {}
        self.broadcasts: list[SignedTx] = []
        self.broadcast_error: Optional[Exception] = None
        self.inbound_failures = 0
        self.inbound_calls: list[tuple] = []
        self.fee = Fee(amount=Decimal("0.00001"), rate=Decimal("10"))
        self.closed = False

    def report(self, address: str, txid: str, amount, height: Optional[int], confirmations: int, vout: int = 0):
        obs = Observation(
            chain=self.chain, txid=txid, vout=vout, address=address, amount=Decimal(str(amount)),
            block_height=height, confirmations=confirmations,
        )
        self.inbound.setdefault(address, {})[obs.key] = obs
        return obs

    async def get_inbound(self, address, since_height):
        self.inbound_calls.append((address, since_height))
        if self.inbound_failures:
            self.inbound_failures -= 1
            raise AdapterUnavailable("scripted outage")
        return list(self.inbound.get(address, {}).values())

    async def get_transaction(self, txid):
        return self.txs.get(txid, TxInfo(txid=txid, found=False))

    async def broadcast(self, signed):
        self.broadcasts.append(signed)
        if self.broadcast_error is not None:
            raise self.broadcast_error
        return signed.txid

    async def estimate_fee(self, amount, priority="normal"):
        return self.fee

    async def current_tip(self):
        return self.tip

    def validate_address(self, address):
        if not address or not address.isalnum():
            raise InvalidAddress(f"invalid {self.chain} address")
        return address

    async def aclose(self):
        self.closed = True


class FakeSigner(Signer):
    def __init__(self):
        self.drafts: list[PayoutDraft] = []
        self.error: Optional[Exception] = None

    async def sign(self, chain, draft):
        self.drafts.append(draft)
        if self.error is not None:
            raise self.error
        return SignedTx(txid=f"out{len(self.drafts):04d}", raw=f"raw-{len(self.drafts)}")


class RecordingSink(NotificationSink):
    def __init__(self, failures: int = 0):
        self.sent: list[tuple[dict, list]] = []
        self.failures = failures
        self.attempts = 0

    async def send(self, payload, recipients):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise AdapterUnavailable("sink down")
        self.sent.append((payload, list(recipients)))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'oae-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def btc():
    return FakeAdapter(DEFAULT_PARAMS["BTC"])


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(session_factory, btc, signer, sink, clock):
    return OnchainActivityEngine(
        session_factory, {"BTC": btc}, signer, sink,
        clock=clock, sleep=AsyncMock(), budget=None, attempt_timeout=5.0,
    )
