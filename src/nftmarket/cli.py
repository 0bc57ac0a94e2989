"""nftmarket CLI — command-line interface for the marketplace.

Usage:
    python -m nftmarket.cli status
    python -m nftmarket.cli deposit --party alice --amount 1000
    python -m nftmarket.cli create-listing --caller alice --uri ipfs://meta/1 --price 100 --fee 25
    python -m nftmarket.cli purchase --caller bob --asset 1 --payment 100
    python -m nftmarket.cli relist --caller bob --asset 1 --price 150 --fee 25
    python -m nftmarket.cli listed
    python -m nftmarket.cli owned --who bob
    python -m nftmarket.cli set-fee --caller platform --fee 30
    python -m nftmarket.cli check-invariants

State lives in --data-dir (state.json and events.jsonl). Settings come
from --config (JSON), then NFTMARKET_* environment variables / .env.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from nftmarket.config import MarketConfig
from nftmarket.models.market import Listing
from nftmarket.persistence.event_log import EventLog
from nftmarket.persistence.state_store import StateStore
from nftmarket.service import MarketService, ServiceResult


def _load_config(args: argparse.Namespace) -> MarketConfig:
    base = MarketConfig.from_config_file(args.config) if args.config else None
    config = MarketConfig.from_env(base=base)
    if args.data_dir is not None:
        config = replace(config, data_dir=args.data_dir)
    return config


def _make_service(config: MarketConfig) -> MarketService:
    """Create a MarketService with durable persistence."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return MarketService(
        config,
        event_log=EventLog(storage_path=config.data_dir / "events.jsonl"),
        state_store=StateStore(storage_path=config.data_dir / "state.json"),
    )


def _print_listings(listings: list[Listing]) -> int:
    print(json.dumps([l.to_dict() for l in listings], indent=2))
    return 0


def _report(result: ServiceResult, summary: Optional[str] = None) -> int:
    if result.success:
        print(summary or json.dumps(result.data, indent=2, default=str))
        return 0
    kind = f"[{result.error_kind.value}] " if result.error_kind else ""
    print(f"Failed: {kind}{'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(service: MarketService, args: argparse.Namespace) -> int:
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_deposit(service: MarketService, args: argparse.Namespace) -> int:
    rail: Any = service.rail
    if not hasattr(rail, "deposit"):
        print("Failed: payment rail does not accept deposits", file=sys.stderr)
        return 1
    rail.deposit(args.party, args.amount)
    err = service.persist()
    if err:
        print(f"Failed: {err}", file=sys.stderr)
        return 1
    print(f"{args.party} balance: {rail.balance(args.party)}")
    return 0


def cmd_balance(service: MarketService, args: argparse.Namespace) -> int:
    rail: Any = service.rail
    if not hasattr(rail, "balance"):
        print("Failed: payment rail does not expose balances", file=sys.stderr)
        return 1
    print(rail.balance(args.party))
    return 0


def cmd_create_listing(service: MarketService, args: argparse.Namespace) -> int:
    result = service.create_listing(args.caller, args.uri, args.price, args.fee)
    if result.success:
        return _report(result, f"Listed asset: {result.data['asset_id']}")
    return _report(result)


def cmd_relist(service: MarketService, args: argparse.Namespace) -> int:
    result = service.relist_item(args.caller, args.asset, args.price, args.fee)
    return _report(result, f"Relisted asset: {args.asset}")


def cmd_purchase(service: MarketService, args: argparse.Namespace) -> int:
    return _report(service.purchase(args.caller, args.asset, args.payment))


def cmd_listed(service: MarketService, args: argparse.Namespace) -> int:
    return _print_listings(service.get_listed_items())


def cmd_owned(service: MarketService, args: argparse.Namespace) -> int:
    return _print_listings(service.get_owned_items(args.who))


def cmd_listed_by(service: MarketService, args: argparse.Namespace) -> int:
    return _print_listings(service.get_listed_by(args.who))


def cmd_get_fee(service: MarketService, args: argparse.Namespace) -> int:
    print(service.get_listing_fee())
    return 0


def cmd_set_fee(service: MarketService, args: argparse.Namespace) -> int:
    result = service.set_listing_fee(args.caller, args.fee)
    return _report(result, f"Listing fee: {args.fee}")


def cmd_check_invariants(service: MarketService, args: argparse.Namespace) -> int:
    result = service.check_invariants()
    if result.success:
        print("All invariants hold.")
        return 0
    for error in result.errors:
        print(f"VIOLATION: {error}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nftmarket",
        description="Escrow-backed marketplace for non-fungible assets",
    )
    parser.add_argument("--config", type=Path, help="Path to JSON config file")
    parser.add_argument("--data-dir", type=Path, help="State directory (default: data/)")
    parser.add_argument("--log-level", help="Logging level (default: WARNING)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show marketplace status")

    p_dep = sub.add_parser("deposit", help="Credit funds to a party (local rail)")
    p_dep.add_argument("--party", required=True)
    p_dep.add_argument("--amount", type=int, required=True)

    p_bal = sub.add_parser("balance", help="Show a party's balance (local rail)")
    p_bal.add_argument("--party", required=True)

    p_create = sub.add_parser("create-listing", help="Mint an asset and list it")
    p_create.add_argument("--caller", required=True, help="Seller identity")
    p_create.add_argument("--uri", required=True, help="Asset content reference")
    p_create.add_argument("--price", type=int, required=True)
    p_create.add_argument("--fee", type=int, required=True, help="Listing fee paid")

    p_relist = sub.add_parser("relist", help="Relist an asset you hold")
    p_relist.add_argument("--caller", required=True)
    p_relist.add_argument("--asset", type=int, required=True)
    p_relist.add_argument("--price", type=int, required=True)
    p_relist.add_argument("--fee", type=int, required=True)

    p_buy = sub.add_parser("purchase", help="Buy a listed asset")
    p_buy.add_argument("--caller", required=True, help="Buyer identity")
    p_buy.add_argument("--asset", type=int, required=True)
    p_buy.add_argument("--payment", type=int, required=True)

    sub.add_parser("listed", help="All items currently listed")

    p_owned = sub.add_parser("owned", help="Items held by an identity")
    p_owned.add_argument("--who", required=True)

    p_by = sub.add_parser("listed-by", help="Items listed by an identity")
    p_by.add_argument("--who", required=True)

    sub.add_parser("get-fee", help="Show the listing fee")

    p_fee = sub.add_parser("set-fee", help="Change the listing fee (privileged)")
    p_fee.add_argument("--caller", required=True)
    p_fee.add_argument("--fee", type=int, required=True)

    sub.add_parser("check-invariants", help="Verify marketplace invariants")

    return parser


COMMANDS = {
    "status": cmd_status,
    "deposit": cmd_deposit,
    "balance": cmd_balance,
    "create-listing": cmd_create_listing,
    "relist": cmd_relist,
    "purchase": cmd_purchase,
    "listed": cmd_listed,
    "owned": cmd_owned,
    "listed-by": cmd_listed_by,
    "get-fee": cmd_get_fee,
    "set-fee": cmd_set_fee,
    "check-invariants": cmd_check_invariants,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    config = _load_config(args)
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return handler(_make_service(config), args)


if __name__ == "__main__":
    raise SystemExit(main())
