"""Command-line interface for the lending risk engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import yaml

from .config import AppConfig, build_markets, load_config
from .exceptions import LendingError
from .health import (
    HealthThresholds,
    borrowing_power,
    collateral_value,
    compute_health,
    debt_value,
    max_borrow_amount,
    max_borrowable,
    max_repay_amount,
    max_withdraw_amount,
)
from .ledger import Ledger
from .logging_setup import configure_logging
from .models import Position, as_dict, to_amount
from .oracles import PythOracle
from .registry import ConfiguredMarketSource, MarketRegistry
from .services import LiquidationMonitor


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="lending-engine",
        description="Lending position health and liquidation engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("check", help="Single liquidation scan with alerts")
    sub.add_parser("report", help="Send a ranked liquidation opportunity report")

    monitor_parser = sub.add_parser("monitor", help="Continuous liquidation scanning")
    monitor_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Scan interval in seconds (overrides config)",
    )

    health_parser = sub.add_parser("health", help="Health ratio and limits for a ledger file")
    health_parser.add_argument("ledger", type=Path, help="Ledger YAML (account + positions)")
    health_parser.add_argument(
        "--live-prices", action="store_true", help="Reprice markets from the price oracle"
    )
    health_parser.add_argument("--json", action="store_true", help="Emit JSON instead of text")

    liquidate_parser = sub.add_parser("liquidate", help="Scan, then liquidate one opportunity")
    liquidate_parser.add_argument("opportunity_id", help="Opportunity id, e.g. liq-0xabc-dot")

    return parser


# ---------------------------------------------------------------------------
# health command
# ---------------------------------------------------------------------------


def load_ledger(path: Path) -> Ledger:
    """Read a ledger file::

        account: "0xabc"
        positions:
          - {asset: dot, supplied: "100", borrowed: "0", is_collateral: true}
    """
    if not path.exists():
        raise FileNotFoundError(f"Ledger file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    positions = [
        Position(
            asset_id=str(p["asset"]),
            supplied=to_amount(str(p.get("supplied", 0))),
            borrowed=to_amount(str(p.get("borrowed", 0))),
            is_collateral=bool(p.get("is_collateral", False)),
        )
        for p in raw.get("positions", [])
    ]
    return Ledger(str(raw.get("account", "local")), positions)


def health_summary(ledger: Ledger, registry: MarketRegistry, thresholds: HealthThresholds) -> dict[str, Any]:
    """Health, aggregate values and per-market limits for *ledger*."""
    positions = ledger.snapshot()
    for p in positions:
        registry.get(p.asset_id)

    health = compute_health(positions, registry, thresholds)
    limits = {
        m.asset.id: {
            "max_borrow": str(max_borrow_amount(positions, registry, m.asset.id)),
            "max_withdraw": str(max_withdraw_amount(positions, registry, m.asset.id, thresholds)),
            "max_repay": str(max_repay_amount(positions, m.asset.id)),
        }
        for m in registry.markets()
    }
    return {
        "account": ledger.account_id,
        "health": as_dict(health),
        "collateral_value": str(collateral_value(positions, registry)),
        "borrowing_power": str(borrowing_power(positions, registry)),
        "debt_value": str(debt_value(positions, registry)),
        "max_borrowable": str(max_borrowable(positions, registry)),
        "positions": [as_dict(p) for p in positions],
        "limits": limits,
    }


def _format_summary(summary: dict[str, Any], registry: MarketRegistry) -> str:
    health = summary["health"]
    value = health["value"]
    if health["kind"] == "infinite":
        shown = "∞"
    elif health["kind"] == "undefined":
        shown = "—"
    else:
        shown = f"{float(value):.4f}"

    lines = [
        f"Account: {summary['account']}",
        f"Health ratio: {shown} ({health['status'].upper()})",
        f"Collateral value: ${float(summary['collateral_value']):,.2f}",
        f"Borrowing power: ${float(summary['borrowing_power']):,.2f}",
        f"Debt value: ${float(summary['debt_value']):,.2f}",
        f"Max borrowable: ${max(float(summary['max_borrowable']), 0.0):,.2f}",
        "",
        "Limits:",
    ]
    for asset_id, limit in summary["limits"].items():
        symbol = registry.get(asset_id).asset.symbol
        lines.append(
            f"  {symbol:<6} borrow {float(limit['max_borrow']):>14,.4f}"
            f"  withdraw {float(limit['max_withdraw']):>14,.4f}"
            f"  repay {float(limit['max_repay']):>14,.4f}"
        )
    return "\n".join(lines)


async def _registry(config: AppConfig, live_prices: bool) -> MarketRegistry:
    markets = build_markets(config)
    if not live_prices:
        return MarketRegistry(markets)
    oracle = PythOracle(config.price_oracle.pyth, timeout=config.engine.fetch_timeout_seconds)
    return MarketRegistry(await ConfiguredMarketSource(markets, oracle).get_markets())


async def _health(args: argparse.Namespace, config: AppConfig) -> None:
    registry = await _registry(config, args.live_prices)
    thresholds = HealthThresholds(
        danger=config.engine.health.danger, warning=config.engine.health.warning
    )
    summary = health_summary(load_ledger(args.ledger), registry, thresholds)
    if args.json:
        print(json.dumps(summary, indent=2, ensure_ascii=False))
    else:
        print(_format_summary(summary, registry))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)

    if args.command == "health":
        await _health(args, config)
        return

    monitor = LiquidationMonitor(config)
    if args.command == "check":
        await monitor.check_and_alert()
    elif args.command == "report":
        print(await monitor.generate_report())
    elif args.command == "monitor":
        await monitor.run_continuous(args.interval)
    elif args.command == "liquidate":
        tx = await monitor.liquidate(args.opportunity_id)
        print(json.dumps(as_dict(tx), indent=2))
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except LendingError as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(2)
