import pytest
from decimal import Decimal

from oae.chains.base import Observation
from oae.core.errors import StorageUnavailable
from oae.models.deposit import DepositState
from oae.services.poller import next_watermark


def obs(height, conf=0):
    return Observation("BTC", f"t{height}", 0, "addrA", Decimal("0.1"), height, conf)


def test_watermark_without_observations_is_tip_minus_margin():
    assert next_watermark(1000, 6, []) == 994


def test_watermark_is_capped_by_highest_new_observation():
    assert next_watermark(1000, 6, [obs(980), obs(990)]) == 990


def test_mempool_observation_counts_as_tip():
    assert next_watermark(1000, 6, [obs(None)]) == 994


def test_old_observations_do_not_hold_watermark_back():
    assert next_watermark(1000, 6, [obs(900)], current=950) == 994


def test_watermark_never_negative():
    assert next_watermark(3, 6, []) == 0


@pytest.mark.asyncio
async def test_poll_detects_and_confirms_deposit(engine, btc):
    await engine.addresses.add("BTC", "addrA", "shop", by="1001")
    poller = engine.pollers[0]

    btc.report("addrA", "tx1", "0.5", None, 0)
    assert await poller.poll_once() == 1
    deposits = await engine.deposits.list()
    assert len(deposits) == 1
    assert deposits[0].state == DepositState.seen

    btc.report("addrA", "tx1", "0.5", 998, 3)
    await poller.poll_once()
    dep = (await engine.deposits.list())[0]
    assert dep.state == DepositState.confirmed
    assert dep.confirmations == 3

    addr = (await engine.addresses.list())[0]
    assert addr.watermark == 994


@pytest.mark.asyncio
async def test_watermark_passed_to_next_scan(engine, btc):
    await engine.addresses.add("BTC", "addrA")
    poller = engine.pollers[0]
    await poller.poll_once()
    await poller.poll_once()
    assert btc.inbound_calls == [("addrA", None), ("addrA", 994)]


@pytest.mark.asyncio
async def test_inactive_addresses_are_not_polled(engine, btc):
    address_id = await engine.addresses.add("BTC", "addrA")
    await engine.addresses.deactivate(address_id)
    assert await engine.pollers[0].poll_once() == 0
    assert btc.inbound_calls == []


@pytest.mark.asyncio
async def test_transient_outage_is_retried(engine, btc):
    await engine.addresses.add("BTC", "addrA")
    btc.report("addrA", "tx1", "0.5", 990, 11)
    btc.inbound_failures = 2
    assert await engine.pollers[0].poll_once() == 1
    assert len(btc.inbound_calls) == 3
    assert len(await engine.deposits.list()) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_leave_watermark_alone(engine, btc):
    await engine.addresses.add("BTC", "addrA")
    btc.inbound_failures = 100
    assert await engine.pollers[0].poll_once() == 0
    addr = (await engine.addresses.list())[0]
    assert addr.watermark is None


@pytest.mark.asyncio
async def test_storage_outage_replays_observation(engine, btc):
    await engine.addresses.add("BTC", "addrA")
    btc.report("addrA", "tx1", "0.5", 990, 11)
    poller = engine.pollers[0]

    original = engine.deposits.record
    calls = []

    async def flaky(o):
        calls.append(o)
        if len(calls) == 1:
            raise StorageUnavailable("db down")
        return await original(o)

    engine.deposits.record = flaky
    assert await poller.poll_once() == 0
    assert len(poller.pending) == 1
    assert (await engine.addresses.list())[0].watermark is None

    btc.inbound.clear()
    await poller.poll_once()
    assert poller.pending == {}
    dep = (await engine.deposits.list())[0]
    assert dep.txid == "tx1"
    assert dep.state == DepositState.confirmed


@pytest.mark.asyncio
async def test_reorg_scenario_orphans_then_reconfirms(engine, btc, sink):
    await engine.addresses.add("BTC", "addrA", by="1001")
    poller = engine.pollers[0]

    btc.report("addrA", "tx1", "0.5", 998, 3)
    await poller.poll_once()
    await engine.dispatcher.run_once()
    assert len(sink.sent) == 1

    # block 998 was replaced; the backend now places the tx at 1000, unconfirmed
    btc.report("addrA", "tx1", "0.5", 1000, 0)
    await poller.poll_once()
    dep = (await engine.deposits.list())[0]
    assert dep.state == DepositState.orphaned
    assert dep.notified_at is not None

    btc.tip = 1002
    btc.report("addrA", "tx1", "0.5", 1001, 2)
    await poller.poll_once()
    btc.report("addrA", "tx1", "0.5", 1001, 3)
    await poller.poll_once()
    dep = (await engine.deposits.list())[0]
    assert dep.state == DepositState.confirmed
    assert dep.block_height == 1001

    # no second notification for the same deposit
    assert await engine.dispatcher.run_once() == 0
    assert len(sink.sent) == 1
