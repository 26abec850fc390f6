"""End-to-end runs through poller, ledger, dispatcher, settlement and payouts."""
import asyncio
import pytest
from decimal import Decimal
from sqlalchemy import select, func

from oae.chains.base import Observation, TxInfo
from oae.models.deposit import DepositState
from oae.models.payout import Payout, PayoutStatus


@pytest.mark.asyncio
async def test_happy_path_deposit_is_notified_and_settled(engine, btc, sink, signer):
    await engine.addresses.add("BTC", "addrX", "shop", by="1001")
    await engine.rules.add("BTC", "destA", 5000, "treasury")
    poller = engine.pollers[0]

    btc.report("addrX", "T", "1.00000000", None, 0)
    await poller.poll_once()
    btc.report("addrX", "T", "1.00000000", 998, 1)
    await poller.poll_once()
    assert await engine.dispatcher.run_once() == 0
    btc.report("addrX", "T", "1.00000000", 998, 3)
    await poller.poll_once()

    assert await engine.dispatcher.run_once() == 1
    assert await engine._settle_step() == 1
    assert await engine._payout_step() == 1

    deposits = await engine.deposits.list()
    assert len(deposits) == 1
    dep = deposits[0]
    assert dep.state == DepositState.confirmed
    assert dep.notified_at is not None and dep.settled_at is not None
    assert len(sink.sent) == 1

    payout = (await engine.payouts.list())[0]
    assert payout.source_deposit_id == dep.id
    assert payout.status == PayoutStatus.processing

    # everything replayed: nothing new happens
    await poller.poll_once()
    assert await engine.dispatcher.run_once() == 0
    assert await engine._settle_step() == 0
    assert await engine._payout_step() == 0
    assert len(signer.drafts) == 1


@pytest.mark.asyncio
async def test_reorg_after_settlement_does_not_settle_again(engine):
    await engine.rules.add("BTC", "destA", 5000)
    obs = Observation("BTC", "T", 0, "addrX", Decimal("1"), 990, 4)
    delta = await engine.deposits.record(obs)
    await engine.dispatcher.run_once()
    await engine.settlement.run_once()

    await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("1"), 995, 0))
    await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("1"), 996, 5))
    dep = await engine.deposits.get(delta.deposit_id)
    assert dep.state == DepositState.confirmed

    assert await engine.dispatcher.run_once() == 0
    assert await engine.settlement.run_once() == 0
    assert len(await engine.payouts.list()) == 1


@pytest.mark.asyncio
async def test_dust_rule_is_dropped_but_deposit_settles(engine):
    await engine.rules.add("BTC", "destA", 100)
    delta = await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("0.00000050"), 990, 4))
    assert await engine.settlement.settle(delta.deposit_id) == []
    assert (await engine.deposits.get(delta.deposit_id)).settled_at is not None
    assert await engine.payouts.list() == []


@pytest.mark.asyncio
async def test_concurrent_settlement_creates_one_payout_set(engine, session_factory):
    await engine.rules.add("BTC", "destA", 5000)
    await engine.rules.add("BTC", "destB", 3000)
    delta = await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("1"), 990, 4))

    results = await asyncio.gather(*(engine.settlement.settle(delta.deposit_id) for _ in range(3)))
    assert sorted(len(r) for r in results) == [0, 0, 2]
    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(Payout))
    assert count == 2


@pytest.mark.asyncio
async def test_settled_shares_never_exceed_deposit(engine):
    await engine.rules.add("BTC", "destA", 3333)
    await engine.rules.add("BTC", "destB", 3333)
    await engine.rules.add("BTC", "destC", 3334)
    delta = await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("0.00100001"), 990, 4))
    payouts = await engine.settlement.settle(delta.deposit_id)
    assert sum(p.amount for p in payouts) <= Decimal("0.00100001")


@pytest.mark.asyncio
async def test_processing_payout_completes_after_outbound_finality(engine, btc):
    await engine.rules.add("BTC", "destA", 5000)
    await engine.deposits.record(Observation("BTC", "T", 0, "addrX", Decimal("1"), 990, 4))
    await engine._settle_step()
    await engine._payout_step()
    payout = (await engine.payouts.list())[0]

    btc.txs[payout.txid] = TxInfo(txid=payout.txid, found=True, confirmations=6, block_height=995)
    await engine.reconciliation.run_once()
    assert (await engine.payouts.get(payout.id)).status == PayoutStatus.completed


@pytest.mark.asyncio
async def test_engine_starts_and_stops(engine, btc):
    await engine.start()
    assert engine.running
    await engine.start()
    await asyncio.sleep(0)
    await engine.stop()
    assert not engine.running
    assert btc.closed
