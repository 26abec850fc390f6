import pytest
from decimal import Decimal

from oae.chains.base import Observation
from oae.core.errors import InvalidAddress, InvalidInput, NotFound, PolicyViolation


@pytest.mark.asyncio
async def test_add_and_list(engine):
    rule = await engine.rules.add("btc", "destA", 2500, "treasury", min_threshold="0.01", by="admin")
    assert rule.chain == "BTC"
    assert rule.enabled is True
    assert rule.min_threshold == Decimal("0.01")
    assert rule.max_amount is None

    rules = await engine.rules.list("BTC")
    assert [r.id for r in rules] == [rule.id]
    events = await engine.security_log.list(user_id="admin", action_prefix="rule.add")
    assert len(events) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("bps", [-5, 10001, 12.5, True, "5000"])
async def test_bad_percentage(engine, bps):
    with pytest.raises(InvalidInput):
        await engine.rules.add("BTC", "destA", bps)


@pytest.mark.asyncio
async def test_zero_percent_rule_is_allowed_and_settles_nothing(engine):
    rule = await engine.rules.add("BTC", "destA", 0, "paused")
    assert rule.percentage_bps == 0

    delta = await engine.deposits.record(Observation("BTC", "tx1", 0, "addrA", Decimal("1"), 990, 11))
    assert await engine.settlement.settle(delta.deposit_id) == []
    assert (await engine.deposits.get(delta.deposit_id)).settled_at is not None


@pytest.mark.asyncio
async def test_bad_destination_and_chain(engine):
    with pytest.raises(InvalidAddress):
        await engine.rules.add("BTC", "not-an-address!", 1000)
    with pytest.raises(InvalidInput):
        await engine.rules.add("DOGE", "destA", 1000)
    with pytest.raises(InvalidInput):
        await engine.rules.add("BTC", "destA", 1000, min_threshold="lots")
    with pytest.raises(InvalidInput):
        await engine.rules.add("BTC", "destA", 1000, max_amount="0")


@pytest.mark.asyncio
async def test_total_over_100_percent_rejected(engine):
    await engine.rules.add("BTC", "destA", 6000)
    await engine.rules.add("BTC", "destB", 4000)
    with pytest.raises(PolicyViolation):
        await engine.rules.add("BTC", "destC", 1)
    assert len(await engine.rules.list()) == 2


@pytest.mark.asyncio
async def test_disabled_rules_do_not_count(engine):
    first = await engine.rules.add("BTC", "destA", 6000)
    await engine.rules.set_enabled(first.id, False, by="admin")
    second = await engine.rules.add("BTC", "destB", 6000)
    assert second.enabled

    with pytest.raises(PolicyViolation):
        await engine.rules.set_enabled(first.id, True)

    await engine.rules.set_enabled(second.id, False)
    rule = await engine.rules.set_enabled(first.id, True)
    assert rule.enabled is True
    actions = [e.action for e in await engine.security_log.list(action_prefix="rule.")]
    assert "rule.disable" in actions and "rule.enable" in actions


@pytest.mark.asyncio
async def test_set_enabled_missing_rule(engine):
    with pytest.raises(NotFound):
        await engine.rules.set_enabled(42, True)
