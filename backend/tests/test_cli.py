import json
import pytest
from decimal import Decimal
from unittest.mock import patch

from oae.chains.base import Observation
from oae.cli import build_parser, execute, main


def output(capsys):
    out = capsys.readouterr().out
    return json.loads(out) if out.strip() else None


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
    args = build_parser().parse_args(["--as", "1001", "payouts", "create", "BTC", "destA", "0.1", "--priority", "high"])
    assert (args.principal, args.group, args.cmd, args.priority) == ("1001", "payouts", "create", "high")


@pytest.mark.asyncio
async def test_addresses_commands(engine, capsys):
    assert await execute(["--as", "1001", "addresses", "add", "BTC", "addrA", "--label", "shop"], engine) == 0
    address_id = output(capsys)["id"]
    assert await execute(["addresses", "list"], engine) == 0
    assert [a["label"] for a in output(capsys)] == ["shop"]
    assert await execute(["addresses", "deactivate", str(address_id)], engine) == 0
    assert await execute(["addresses", "list", "--all"], engine) == 0
    assert output(capsys)[0]["active"] is False


@pytest.mark.asyncio
async def test_errors_map_to_exit_codes(engine, capsys):
    assert await execute(["addresses", "add", "BTC", "bad!"], engine) == 2
    assert "invalid_address" in capsys.readouterr().err
    assert await execute(["payouts", "get", "42"], engine) == 2
    assert "not_found" in capsys.readouterr().err

    await engine.security.set_pin("1001", "2468")
    payout = await engine.payouts.create("BTC", "destA", "0.1")
    assert await execute(["payouts", "authorize", str(payout.id), "--user", "1001", "--pin", "0000"], engine) == 3
    assert "bad_pin" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_rules_commands(engine, capsys):
    assert await execute(["rules", "add", "BTC", "destA", "5000", "--label", "treasury", "--min", "0.4"], engine) == 0
    rule = output(capsys)
    assert rule["percentage_bps"] == 5000
    assert Decimal(rule["min_threshold"]) == Decimal("0.4")
    assert await execute(["rules", "disable", str(rule["id"])], engine) == 0
    assert output(capsys)["enabled"] is False
    assert await execute(["rules", "add", "BTC", "destB", "20000"], engine) == 2


@pytest.mark.asyncio
async def test_payout_commands(engine, capsys):
    assert await execute(["--as", "1001", "payouts", "create", "BTC", "destA", "0.1", "--notes", "refund"], engine) == 0
    payout = output(capsys)
    assert payout["created_by"] == "1001"

    with patch("oae.cli._ask_pin", return_value="2468"):
        assert await execute(["pin", "set", "1001"], engine) == 0
        assert await execute(["payouts", "authorize", str(payout["id"]), "--user", "1001"], engine) == 0
    capsys.readouterr()

    assert await execute(["payouts", "list", "--status", "authorized"], engine) == 0
    assert [p["id"] for p in output(capsys)] == [payout["id"]]

    assert await execute(["payouts", "batch", "BTC", "destA:0.1", "destB:0.2"], engine) == 0
    batch = output(capsys)
    assert len({p["batch_id"] for p in batch}) == 1
    assert await execute(["payouts", "batch", "BTC", "destA"], engine) == 2
    capsys.readouterr()

    assert await execute(["payouts", "cancel", str(batch[0]["id"])], engine) == 0
    assert output(capsys)["status"] == "cancelled"

    assert await execute(["payouts", "fee", "BTC", "0.1"], engine) == 0
    assert output(capsys)["fee"] == "0.00001"


@pytest.mark.asyncio
async def test_pin_and_events_commands(engine, capsys):
    assert await execute(["pin", "set", "1001", "--pin", "2468"], engine) == 0
    assert await execute(["pin", "status", "1001"], engine) == 0
    assert output(capsys)["has_pin"] is True
    assert await execute(["--as", "admin", "pin", "remove", "1001"], engine) == 0
    assert await execute(["events", "--action", "pin."], engine) == 0
    assert [e["action"] for e in output(capsys)] == ["pin.remove", "pin.create"]


@pytest.mark.asyncio
async def test_deposits_and_dead_letters(engine, sink, capsys):
    sink.failures = 100
    delta = await engine.deposits.record(Observation("BTC", "tx1", 0, "addrA", Decimal("0.5"), 990, 11))
    await engine.dispatcher.dispatch(delta.deposit_id)

    assert await execute(["deposits", "list", "--state", "confirmed"], engine) == 0
    assert [d["txid"] for d in output(capsys)] == ["tx1"]

    assert await execute(["dead-letters", "list"], engine) == 0
    letters = output(capsys)
    assert letters[0]["ref_id"] == delta.deposit_id
    assert await execute(["dead-letters", "resolve", str(letters[0]["id"])], engine) == 0
    capsys.readouterr()
    assert await execute(["dead-letters", "list"], engine) == 0
    assert output(capsys) == []


def test_token_command(capsys):
    from oae.core.security import decode_token

    assert main(["token", "1001", "--minutes", "5"]) == 0
    assert decode_token(capsys.readouterr().out.strip()) == "1001"


def test_migrate_failure_exit_code(capsys):
    with patch("oae.cli.migrate", side_effect=RuntimeError("no database")):
        assert main(["migrate"]) == 4
    assert "storage_unavailable" in capsys.readouterr().err
