"""Operator CLI.

USAGE:
    oae addresses add BTC bc1q... --label "shop hot wallet"
    oae rules add BTC bc1q... 5000 --label treasury --min 0.01
    oae payouts create BTC bc1q... 0.25 --priority high --as 1001
    oae payouts authorize 42 --user 1001          # prompts for the PIN
    oae deposits list --state confirmed
    oae run                                        # pollers and workers, no HTTP

Exit codes: 0 ok, 2 validation, 3 authorization, 4 storage, 5 adapter.
"""
import argparse
import asyncio
import getpass
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from oae.core.errors import InvalidInput, OAEError
from oae.core.log import setup_logging

logger = logging.getLogger("oae.cli")

BACKEND_DIR = Path(__file__).resolve().parents[1]


def _parse_when(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO timestamp: {value}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="oae", description="Onchain activity engine operator tool")
    parser.add_argument("--as", dest="principal", default="cli", help="principal recorded in the audit log")
    parser.add_argument("--log-level", default=None, help="overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="group", required=True)

    addresses = sub.add_parser("addresses", help="watched receiving addresses").add_subparsers(dest="cmd", required=True)
    p = addresses.add_parser("add")
    p.add_argument("chain")
    p.add_argument("address")
    p.add_argument("--label", default="")
    p = addresses.add_parser("deactivate")
    p.add_argument("id", type=int)
    p = addresses.add_parser("list")
    p.add_argument("--chain")
    p.add_argument("--all", action="store_true", help="include deactivated addresses")

    rules = sub.add_parser("rules", help="auto-settlement rules").add_subparsers(dest="cmd", required=True)
    p = rules.add_parser("add")
    p.add_argument("chain")
    p.add_argument("destination")
    p.add_argument("bps", type=int, help="share in basis points (10000 = 100%%)")
    p.add_argument("--label", default="")
    p.add_argument("--min", dest="min_threshold")
    p.add_argument("--max", dest="max_amount")
    p = rules.add_parser("list")
    p.add_argument("--chain")
    for name in ("enable", "disable"):
        rules.add_parser(name).add_argument("id", type=int)

    payouts = sub.add_parser("payouts", help="outbound payouts").add_subparsers(dest="cmd", required=True)
    p = payouts.add_parser("create")
    p.add_argument("chain")
    p.add_argument("to_address")
    p.add_argument("amount")
    p.add_argument("--notes", default="")
    p.add_argument("--priority", choices=["low", "normal", "high"], default="normal")
    p.add_argument("--at", dest="scheduled_at", type=_parse_when, help="schedule for an ISO timestamp")
    p = payouts.add_parser("batch")
    p.add_argument("chain")
    p.add_argument("outputs", nargs="+", metavar="ADDRESS:AMOUNT")
    p.add_argument("--priority", choices=["low", "normal", "high"], default="normal")
    p = payouts.add_parser("authorize")
    p.add_argument("id", type=int)
    p.add_argument("--user", required=True, help="principal whose PIN authorizes the payout")
    p.add_argument("--pin", help="omit to be prompted")
    for name in ("cancel", "retry", "clone", "get"):
        payouts.add_parser(name).add_argument("id", type=int)
    p = payouts.add_parser("list")
    p.add_argument("--chain")
    p.add_argument("--status")
    p.add_argument("--batch")
    p.add_argument("--limit", type=int, default=100)
    p = payouts.add_parser("fee")
    p.add_argument("chain")
    p.add_argument("amount")
    p.add_argument("--priority", choices=["low", "normal", "high"], default="normal")

    deposits = sub.add_parser("deposits", help="detected deposits").add_subparsers(dest="cmd", required=True)
    p = deposits.add_parser("list")
    p.add_argument("--chain")
    p.add_argument("--state")
    p.add_argument("--address")
    p.add_argument("--limit", type=int, default=100)

    pin = sub.add_parser("pin", help="transaction PINs").add_subparsers(dest="cmd", required=True)
    p = pin.add_parser("set")
    p.add_argument("user")
    p.add_argument("--pin", help="omit to be prompted")
    p = pin.add_parser("change")
    p.add_argument("user")
    for name in ("status", "remove"):
        pin.add_parser(name).add_argument("user")

    dead = sub.add_parser("dead-letters", help="parked background work").add_subparsers(dest="cmd", required=True)
    dead.add_parser("list").add_argument("--all", action="store_true")
    dead.add_parser("resolve").add_argument("id", type=int)

    p = sub.add_parser("events", help="security log")
    p.add_argument("--user")
    p.add_argument("--action")
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("token", help="issue an API bearer token")
    p.add_argument("user")
    p.add_argument("--minutes", type=int)

    sub.add_parser("run", help="run pollers and workers until interrupted")
    sub.add_parser("migrate", help="upgrade the database schema to head")
    return parser


def _dump(rows, schema) -> list[dict]:
    return [schema.model_validate(row).model_dump(mode="json") for row in rows]


def _emit(result) -> None:
    if result is None:
        return
    if isinstance(result, (dict, list)):
        print(json.dumps(result, indent=2, default=str))
    else:
        print(result)


def _ask_pin(prompt: str = "PIN: ") -> str:
    return getpass.getpass(prompt)


async def _run_forever(engine) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await engine.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()


async def dispatch(args: argparse.Namespace, engine):
    """Run one parsed command against ``engine``; returns what should be printed."""
    from oae.schemas.address import AddressResponse
    from oae.schemas.deposit import DepositResponse
    from oae.schemas.payout import PayoutResponse
    from oae.schemas.rule import RuleResponse
    from oae.schemas.security import DeadLetterResponse, PinStatusResponse, SecurityEventResponse

    by = args.principal
    group, cmd = args.group, getattr(args, "cmd", None)

    if group == "addresses":
        if cmd == "add":
            return {"id": await engine.addresses.add(args.chain, args.address, args.label, by=by)}
        if cmd == "deactivate":
            await engine.addresses.deactivate(args.id, by=by)
            return None
        return _dump(await engine.addresses.list(args.chain, include_inactive=args.all), AddressResponse)

    if group == "rules":
        if cmd == "add":
            rule = await engine.rules.add(
                args.chain, args.destination, args.bps, args.label,
                min_threshold=args.min_threshold, max_amount=args.max_amount, by=by,
            )
            return _dump([rule], RuleResponse)[0]
        if cmd in ("enable", "disable"):
            return _dump([await engine.rules.set_enabled(args.id, cmd == "enable", by=by)], RuleResponse)[0]
        return _dump(await engine.rules.list(args.chain), RuleResponse)

    if group == "payouts":
        if cmd == "create":
            payout = await engine.payouts.create(
                args.chain, args.to_address, args.amount, notes=args.notes,
                priority=args.priority, by=by, scheduled_at=args.scheduled_at,
            )
            return _dump([payout], PayoutResponse)[0]
        if cmd == "batch":
            items = []
            for output in args.outputs:
                address, sep, amount = output.rpartition(":")
                if not sep:
                    raise InvalidInput(f"expected ADDRESS:AMOUNT, got {output}")
                items.append({"to_address": address, "amount": amount})
            return _dump(await engine.payouts.create_batch(args.chain, items, args.priority, by=by), PayoutResponse)
        if cmd == "authorize":
            candidate = args.pin if args.pin is not None else _ask_pin()
            return _dump([await engine.payouts.authorize(args.id, args.user, candidate)], PayoutResponse)[0]
        if cmd == "cancel":
            return _dump([await engine.payouts.cancel(args.id, by=by)], PayoutResponse)[0]
        if cmd == "retry":
            return _dump([await engine.payouts.retry(args.id, by=by)], PayoutResponse)[0]
        if cmd == "clone":
            return _dump([await engine.payouts.clone(args.id, by=by)], PayoutResponse)[0]
        if cmd == "get":
            return _dump([await engine.payouts.get(args.id)], PayoutResponse)[0]
        if cmd == "fee":
            fee = await engine.payouts.estimate_fee(args.chain, args.amount, args.priority)
            return {"chain": args.chain.upper(), "fee": str(fee.amount), "rate": str(fee.rate) if fee.rate else None}
        return _dump(
            await engine.payouts.list(args.chain, args.status, batch_id=args.batch, limit=args.limit), PayoutResponse,
        )

    if group == "deposits":
        return _dump(
            await engine.deposits.list(args.chain, args.state, args.address, limit=args.limit), DepositResponse,
        )

    if group == "pin":
        if cmd == "set":
            await engine.security.set_pin(args.user, args.pin if args.pin is not None else _ask_pin("New PIN: "))
            return None
        if cmd == "change":
            await engine.security.change_pin(args.user, _ask_pin("Current PIN: "), _ask_pin("New PIN: "))
            return None
        if cmd == "remove":
            await engine.security.remove_pin(args.user, by=by)
            return None
        return PinStatusResponse(**await engine.security.status(args.user)).model_dump(mode="json")

    if group == "dead-letters":
        if cmd == "resolve":
            return _dump([await engine.dead_letters.resolve(args.id, by=by)], DeadLetterResponse)[0]
        return _dump(await engine.dead_letters.list(include_resolved=args.all), DeadLetterResponse)

    if group == "events":
        return _dump(
            await engine.security_log.list(user_id=args.user, action_prefix=args.action, limit=args.limit),
            SecurityEventResponse,
        )

    if group == "run":
        await _run_forever(engine)
        return None

    raise ValueError(f"unhandled command: {group} {cmd}")


async def execute(argv: list[str], engine) -> int:
    """Parse and run a command against an existing engine; returns the exit code."""
    args = build_parser().parse_args(argv)
    try:
        _emit(await dispatch(args, engine))
    except OAEError as e:
        print(f"error: {e.code}: {e.message}", file=sys.stderr)
        return e.exit_code
    return 0


def migrate() -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(BACKEND_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(BACKEND_DIR / "alembic"))
    command.upgrade(cfg, "head")


async def _main(args: argparse.Namespace) -> int:
    from oae.config import settings
    from oae.database import AsyncSessionLocal, engine as db_engine
    from oae.engine import OnchainActivityEngine

    engine = OnchainActivityEngine.from_settings(settings, AsyncSessionLocal)
    try:
        _emit(await dispatch(args, engine))
    except OAEError as e:
        print(f"error: {e.code}: {e.message}", file=sys.stderr)
        return e.exit_code
    finally:
        if args.group != "run":
            await engine.aclose()
        await db_engine.dispose()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    from oae.config import settings

    setup_logging(args.log_level or settings.LOG_LEVEL)

    if args.group == "token":
        from oae.core.security import create_access_token
        print(create_access_token(args.user, args.minutes))
        return 0
    if args.group == "migrate":
        try:
            migrate()
        except Exception as e:
            logger.exception("migration failed")
            print(f"error: storage_unavailable: {e}", file=sys.stderr)
            return 4
        return 0
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
