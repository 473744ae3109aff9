"""Command line entry point.

Commands:
    run           Start the periodic monitor
    index         Run one indexing pass over every enabled contract
    refresh       Print snapshot summaries, refreshing them first when stale
    status        Show cursors, snapshot freshness and recent alert events
    heartbeat     Send the daily position digest once, now
    init-db       Create the database schema
    add-contract  Register a monitored contract
    enable-contract   Resume monitoring a contract
    disable-contract  Stop monitoring a contract
    add-wallet    Register a user wallet (creating the user when needed)
    reset-cursor  Rewind a contract's scan cursor
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from position_sentinel.config import Settings, get_settings
from position_sentinel.monitor import Monitor, Services
from position_sentinel.storage.models import ContractKind
from position_sentinel.storage.repos import (
    AlertEventRepository,
    ContractRepository,
    ScanCursorRepository,
    SnapshotRepository,
    UserRepository,
    WalletRepository,
)

logger = logging.getLogger("position_sentinel")


def setup_logging(settings: Settings) -> None:
    """Configure root logging at the configured level."""
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def _fmt(value: Any, digits: int = 4) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


async def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    """Run the monitor until interrupted."""
    monitor = Monitor(settings, dry_run=args.dry_run or None)
    await monitor.run()
    return 0


async def cmd_index(settings: Settings, args: argparse.Namespace) -> int:
    """One indexing pass."""
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        stats = await services.scanner.scan_all()
    finally:
        await services.aclose()
    print(
        f"contracts={stats.contracts_scanned} failed={stats.contracts_failed} "
        f"windows={stats.windows_scanned} logs={stats.logs_seen} "
        f"consumed={stats.logs_consumed} skipped={stats.logs_skipped}"
    )
    return 1 if stats.contracts_failed else 0


async def cmd_refresh(settings: Settings, args: argparse.Namespace) -> int:
    """Print summaries through the staleness-gated refresh path."""
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        result = await services.coordinator.get_summaries()
    finally:
        await services.aclose()

    summaries = result.summaries
    if result.warning:
        print(f"WARNING: {result.warning}")
    print(
        f"Snapshots as of {_fmt(summaries.newest_at)} "
        f"(stale={result.is_stale}, refreshed={result.refreshed})"
    )

    print(f"\nLoans ({len(summaries.loans)}):")
    for loan in summaries.loans:
        print(
            f"  {loan.protocol} #{loan.identity.token_id} user={loan.identity.user_id} "
            f"debt={_fmt(loan.debt, 2)} ltv={_fmt(loan.ltv_pct, 2)}% "
            f"liq={loan.liquidation_tier} buffer={_fmt(loan.liquidation_buffer_frac)} "
            f"redemp={loan.redemption_tier} ahead={_fmt(loan.debt_ahead_frac)}"
        )

    print(f"\nLP positions ({len(summaries.lps)}):")
    for lp in summaries.lps:
        print(
            f"  {lp.protocol} #{lp.identity.token_id} user={lp.identity.user_id} "
            f"{lp.range_status} tier={lp.range_tier} "
            f"ticks=[{_fmt(lp.tick_lower)}, {_fmt(lp.tick_upper)}] current={_fmt(lp.current_tick)}"
        )
    return 0


async def cmd_status(settings: Settings, args: argparse.Namespace) -> int:
    """Cursors, snapshot freshness and recent alert events (and RPC reachability with --check-rpc)."""
    unhealthy = False
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        if args.check_rpc:
            health = await services.clients.health_check()
            unhealthy = not all(health.values())
            print("RPC endpoints:")
            for chain_id, healthy in health.items():
                print(f"  {chain_id} {'ok' if healthy else 'UNREACHABLE'}")
            print()
        async with services.db.get_async_session() as session:
            contracts = await ContractRepository(session).list_enabled()
            cursors = ScanCursorRepository(session)
            print(f"Monitored contracts ({len(contracts)}):")
            for contract in contracts:
                cursor = await cursors.get(contract.id)
                last = cursor.last_scanned_block if cursor else None
                print(
                    f"  [{contract.id}] {contract.chain_id} {contract.protocol} "
                    f"{contract.kind.value} {contract.address_eip55} last_scanned={_fmt(last)}"
                )

            newest = await SnapshotRepository(session).max_snapshot_at()
            print(f"\nNewest snapshot: {_fmt(newest)}")

            events = await AlertEventRepository(session).list_recent(limit=args.limit)
            print(f"\nRecent alert events ({len(events)}):")
            for event in events:
                print(
                    f"  {_fmt(event.created_at)} {event.phase} {event.alert_type} "
                    f"user={event.identity.user_id} token={event.identity.token_id}"
                )
    finally:
        await services.aclose()
    return 1 if unhealthy else 0


async def cmd_init_db(settings: Settings, args: argparse.Namespace) -> int:
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
    finally:
        await services.aclose()
    print("Schema initialized")
    return 0


async def cmd_add_contract(settings: Settings, args: argparse.Namespace) -> int:
    """Register a monitored contract."""
    try:
        config = json.loads(args.config) if args.config else {}
    except json.JSONDecodeError as e:
        print(f"Error: --config is not valid JSON: {e}")
        return 1

    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        async with services.db.get_async_session() as session:
            created = await ContractRepository(session).register(
                chain_id=args.chain_id,
                address=args.address,
                protocol=args.protocol,
                kind=ContractKind(args.kind),
                default_start_block=args.start_block,
                config=config,
            )
    finally:
        await services.aclose()
    print("Contract registered" if created else "Contract already registered")
    return 0


async def cmd_add_wallet(settings: Settings, args: argparse.Namespace) -> int:
    """Register a wallet for a user, creating the user first when no id is given."""
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        async with services.db.get_async_session() as session:
            users = UserRepository(session)
            if args.user_id is not None:
                user = await users.get(args.user_id)
                if user is None:
                    print(f"Error: user {args.user_id} not found")
                    return 1
            else:
                user = await users.create(discord_id=args.discord_id, discord_name=args.discord_name)
            wallet = await WalletRepository(session).add(
                user_id=user.id,
                chain_id=args.chain_id,
                address=args.address,
                label=args.label,
            )
    finally:
        await services.aclose()
    print(f"Wallet {wallet.id} registered for user {user.id}")
    return 0


async def cmd_heartbeat(settings: Settings, args: argparse.Namespace) -> int:
    """Send the daily digest to every reachable user right away."""
    services = Services.create(settings, dry_run=args.dry_run or settings.dry_run)
    try:
        await services.db.init_schema_async()
        result = await services.heartbeat.run_once()
    finally:
        await services.aclose()
    if result is None:
        return 1
    if result.warning:
        print(f"WARNING: {result.warning}")
    print(
        f"recipients={result.recipients} sent={result.sent} blocked={result.blocked} "
        f"failed={result.failed} stale={result.is_stale}"
    )
    return 1 if result.failed else 0


async def cmd_set_contract_enabled(settings: Settings, args: argparse.Namespace) -> int:
    """Resume or stop monitoring a contract."""
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        async with services.db.get_async_session() as session:
            updated = await ContractRepository(session).set_enabled(args.contract_id, args.enabled)
    finally:
        await services.aclose()
    if not updated:
        print(f"Error: contract {args.contract_id} not found")
        return 1
    print(f"Contract {args.contract_id} {'enabled' if args.enabled else 'disabled'}")
    return 0


async def cmd_reset_cursor(settings: Settings, args: argparse.Namespace) -> int:
    """Rewind a scan cursor so the next pass re-reads from ``start_block``."""
    services = Services.create(settings, dry_run=True)
    try:
        await services.db.init_schema_async()
        async with services.db.get_async_session() as session:
            contract = await ContractRepository(session).get(args.contract_id)
            if contract is None:
                print(f"Error: contract {args.contract_id} not found")
                return 1
            cursor = await ScanCursorRepository(session).reset(
                contract.id,
                start_block=args.start_block,
            )
    finally:
        await services.aclose()
    print(f"Cursor for contract {cursor.contract_id} reset to block {cursor.start_block}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="position-sentinel",
        description="On-chain loan and LP position risk monitor",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start the periodic monitor")
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log alerts instead of sending Discord messages",
    )
    run.set_defaults(handler=cmd_run)

    sub.add_parser("index", help="Run one indexing pass").set_defaults(handler=cmd_index)
    sub.add_parser("refresh", help="Show summaries, refreshing when stale").set_defaults(
        handler=cmd_refresh
    )

    status = sub.add_parser("status", help="Show cursors, freshness and recent alerts")
    status.add_argument("--limit", type=int, default=20, help="Alert events to show (default: 20)")
    status.add_argument("--check-rpc", action="store_true", help="Also probe every configured RPC endpoint")
    status.set_defaults(handler=cmd_status)

    heartbeat = sub.add_parser("heartbeat", help="Send the daily position digest now")
    heartbeat.add_argument("--dry-run", action="store_true", help="Log the digest instead of sending it")
    heartbeat.set_defaults(handler=cmd_heartbeat)

    sub.add_parser("init-db", help="Create the database schema").set_defaults(handler=cmd_init_db)

    contract = sub.add_parser("add-contract", help="Register a monitored contract")
    contract.add_argument("chain_id", help="Chain identifier, e.g. 'ethereum'")
    contract.add_argument("address", help="Contract address")
    contract.add_argument("protocol", help="Protocol label")
    contract.add_argument("kind", choices=[k.value for k in ContractKind], help="Contract kind")
    contract.add_argument("--start-block", type=int, default=None, help="First block to scan")
    contract.add_argument("--config", default=None, help="Protocol config as a JSON object")
    contract.set_defaults(handler=cmd_add_contract)

    for name, enabled, text in (
        ("enable-contract", True, "Resume monitoring a contract"),
        ("disable-contract", False, "Stop monitoring a contract"),
    ):
        toggle = sub.add_parser(name, help=text)
        toggle.add_argument("contract_id", type=int, help="Monitored contract id")
        toggle.set_defaults(handler=cmd_set_contract_enabled, enabled=enabled)

    wallet = sub.add_parser("add-wallet", help="Register a user wallet")
    wallet.add_argument("chain_id", help="Chain identifier")
    wallet.add_argument("address", help="Wallet address")
    wallet.add_argument("--user-id", type=int, default=None, help="Existing user id")
    wallet.add_argument("--discord-id", default=None, help="Discord id for a new user")
    wallet.add_argument("--discord-name", default=None, help="Discord name for a new user")
    wallet.add_argument("--label", default=None, help="Wallet label")
    wallet.set_defaults(handler=cmd_add_wallet)

    reset = sub.add_parser("reset-cursor", help="Rewind a contract's scan cursor")
    reset.add_argument("contract_id", type=int, help="Monitored contract id")
    reset.add_argument("--start-block", type=int, required=True, help="Block to resume from")
    reset.set_defaults(handler=cmd_reset_cursor)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return 1

    setup_logging(settings)
    logger.info("Configuration: %s", settings.redacted_summary())

    try:
        return asyncio.run(args.handler(settings, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
