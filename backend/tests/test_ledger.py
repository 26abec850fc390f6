import asyncio
import pytest
from decimal import Decimal
from sqlalchemy import select, func

from oae.chains.base import Observation, TxInfo
from oae.chains.factory import DEFAULT_PARAMS
from oae.core.errors import InvalidInput, NotFound
from oae.models.deposit import Deposit, DepositState
from oae.services.ledger import DeltaKind, DetectionLedger

BTC = DEFAULT_PARAMS["BTC"]


def obs(height=None, conf=0, txid="t1", vout=0, amount="1.00000000"):
    return Observation(
        chain="BTC", txid=txid, vout=vout, address="addrX", amount=Decimal(amount),
        block_height=height, confirmations=conf,
    )


@pytest.fixture
def ledger(session_factory, clock):
    return DetectionLedger(session_factory, {"BTC": BTC}, clock)


@pytest.mark.asyncio
async def test_first_record_is_new_and_seen(ledger):
    delta = await ledger.record(obs())
    assert delta.kind == DeltaKind.NEW
    assert delta.state == DepositState.seen
    assert delta.previous_state is None


@pytest.mark.asyncio
async def test_happy_path_seen_confirming_confirmed(ledger):
    await ledger.record(obs())
    d1 = await ledger.record(obs(height=900, conf=1))
    assert d1.kind == DeltaKind.ADVANCED
    assert d1.state == DepositState.confirming
    d2 = await ledger.record(obs(height=900, conf=3))
    assert d2.kind == DeltaKind.CONFIRMED
    assert d2.state == DepositState.confirmed

    dep = await ledger.get(d2.deposit_id)
    assert dep.confirmations == 3
    assert dep.block_height == 900


@pytest.mark.asyncio
async def test_replay_is_noop(ledger, session_factory):
    for o in (obs(), obs(height=900, conf=1), obs(height=900, conf=3)):
        await ledger.record(o)
    again = await ledger.record(obs(height=900, conf=3))
    assert again.kind == DeltaKind.NOOP

    async with session_factory() as db:
        count = await db.scalar(select(func.count()).select_from(Deposit))
    assert count == 1


@pytest.mark.asyncio
async def test_replaying_any_prefix_gives_same_state(ledger):
    stream = [obs(), obs(height=900, conf=1), obs(height=900, conf=2), obs(height=900, conf=4)]
    for o in stream:
        await ledger.record(o)
    for o in stream[:3]:
        await ledger.record(o)
    dep = (await ledger.list())[0]
    assert dep.state == DepositState.confirmed
    assert dep.confirmations == 4


@pytest.mark.asyncio
async def test_lagging_backend_does_not_lower_confirmations(ledger):
    await ledger.record(obs(height=900, conf=2))
    delta = await ledger.record(obs(height=900, conf=1))
    assert delta.kind == DeltaKind.NOOP
    dep = await ledger.get(delta.deposit_id)
    assert dep.confirmations == 2


@pytest.mark.asyncio
async def test_first_sight_already_deep_is_new_but_confirmed(ledger):
    delta = await ledger.record(obs(height=900, conf=5))
    assert delta.kind == DeltaKind.NEW
    assert delta.state == DepositState.confirmed


@pytest.mark.asyncio
async def test_reorg_orphans_and_keeps_notified_at(ledger, session_factory, clock):
    await ledger.record(obs(height=900, conf=4))
    async with session_factory() as db:
        async with db.begin():
            dep = await db.scalar(select(Deposit))
            dep.notified_at = clock()
            dep.settled_at = clock()

    delta = await ledger.record(obs(height=905, conf=0))
    assert delta.kind == DeltaKind.ORPHANED
    assert delta.state == DepositState.orphaned

    dep = await ledger.get(delta.deposit_id)
    assert dep.confirmations == 0
    assert dep.notified_at is not None
    assert dep.settled_at is not None


@pytest.mark.asyncio
async def test_orphan_reenters_confirming_on_new_block(ledger):
    await ledger.record(obs(height=900, conf=2))
    await ledger.record(obs(height=901, conf=0))
    dep = (await ledger.list())[0]
    assert dep.state == DepositState.orphaned

    back = await ledger.record(obs(height=903, conf=1))
    assert back.kind == DeltaKind.ADVANCED
    assert back.state == DepositState.confirming
    again = await ledger.record(obs(height=903, conf=3))
    assert again.kind == DeltaKind.CONFIRMED


@pytest.mark.asyncio
async def test_zero_confirmations_at_same_height_is_not_a_reorg(ledger):
    await ledger.record(obs(height=900, conf=2))
    delta = await ledger.record(obs(height=900, conf=0))
    assert delta.kind == DeltaKind.NOOP
    assert delta.state == DepositState.confirming


@pytest.mark.asyncio
async def test_seen_deposit_dropping_is_not_orphaned(ledger):
    await ledger.record(obs())
    delta = await ledger.record(obs(height=None, conf=0))
    assert delta.kind == DeltaKind.NOOP
    assert delta.state == DepositState.seen


@pytest.mark.asyncio
async def test_vout_is_part_of_the_key(ledger):
    a = await ledger.record(obs(vout=0))
    b = await ledger.record(obs(vout=1))
    assert a.kind == b.kind == DeltaKind.NEW
    assert a.deposit_id != b.deposit_id


@pytest.mark.asyncio
async def test_listeners_get_every_delta(ledger):
    seen = []
    ledger.on_delta(seen.append)
    await ledger.record(obs())
    await ledger.record(obs())
    assert [d.kind for d in seen] == [DeltaKind.NEW, DeltaKind.NOOP]


@pytest.mark.asyncio
async def test_unknown_chain_rejected(ledger):
    bad = Observation("DOGE", "t", 0, "a", Decimal(1), None, 0)
    with pytest.raises(InvalidInput):
        await ledger.record(bad)


@pytest.mark.asyncio
async def test_list_filters_and_get_missing(ledger):
    await ledger.record(obs(txid="a"))
    await ledger.record(obs(txid="b", height=900, conf=3))
    confirmed = await ledger.list(state="confirmed")
    assert [d.txid for d in confirmed] == ["b"]
    with pytest.raises(InvalidInput):
        await ledger.list(state="bogus")
    with pytest.raises(NotFound):
        await ledger.get(999)


@pytest.mark.asyncio
async def test_record_outbound_tracks_confirmations(ledger):
    row = await ledger.record_outbound("BTC", TxInfo(txid="out1", found=True, confirmations=2, block_height=950))
    assert row.confirmations == 2
    row = await ledger.record_outbound("BTC", TxInfo(txid="out1", found=True, confirmations=1, block_height=950))
    assert row.confirmations == 2
    row = await ledger.record_outbound("BTC", TxInfo(txid="out1", found=True, confirmations=7, block_height=950))
    assert row.confirmations == 7


@pytest.mark.asyncio
async def test_replayed_mempool_sighting_does_not_orphan(ledger):
    stream = [obs(), obs(height=900, conf=1), obs(height=900, conf=4)]
    for o in stream:
        await ledger.record(o)
    delta = await ledger.record(obs())
    assert delta.kind == DeltaKind.NOOP
    assert delta.state == DepositState.confirmed
    for o in stream:
        await ledger.record(o)
    dep = await ledger.get(delta.deposit_id)
    assert (dep.state, dep.confirmations, dep.block_height) == (DepositState.confirmed, 4, 900)


@pytest.mark.asyncio
async def test_same_key_records_never_overlap(ledger):
    running = 0
    peak = 0
    original = ledger._record

    async def tracked(o, params):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        try:
            await asyncio.sleep(0.01)
            return await original(o, params)
        finally:
            running -= 1

    ledger._record = tracked

    async def after(delay, o):
        await asyncio.sleep(delay)
        return await ledger.record(o)

    await asyncio.gather(
        after(0, obs()),
        after(0.005, obs(height=900, conf=1)),
        after(0.012, obs(height=900, conf=2)),
        after(0.02, obs(height=900, conf=3)),
    )
    assert peak == 1
    assert ledger._locks == {}
    dep = (await ledger.list())[0]
    assert dep.state == DepositState.confirmed
