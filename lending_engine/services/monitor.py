"""Liquidation monitoring — periodic scans, alerts and reports."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from ..config import AppConfig, build_markets
from ..interfaces.notifier import Notifier
from ..interfaces.price_oracle import PriceOracle
from ..liquidator import Liquidator
from ..models import LiquidationOpportunity, ScanResult, Transaction
from ..notifications import TelegramNotifier
from ..oracles import PythOracle
from ..registry import ConfiguredMarketSource
from ..rpc import JsonRpcClient, RpcLendingGateway
from ..scanner import LiquidationScanner, OpportunityBook

logger = logging.getLogger(__name__)


class LiquidationMonitor:
    """Wires configuration into a scanner, an opportunity book and notifiers."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        engine = config.engine
        markets = build_markets(config)

        oracle: PriceOracle | None = None
        if config.price_oracle.pyth.feeds:
            oracle = PythOracle(config.price_oracle.pyth, timeout=engine.fetch_timeout_seconds)
        self._market_source = ConfiguredMarketSource(markets, oracle)

        self._gateway = RpcLendingGateway(
            JsonRpcClient(config.chain), config.liquidator.address, markets
        )
        self._scanner = LiquidationScanner(
            self._market_source,
            self._gateway,
            liquidation_threshold=engine.liquidation.threshold,
            discount=engine.liquidation.discount,
            fetch_timeout=engine.fetch_timeout_seconds,
            max_concurrency=engine.scan_concurrency,
        )
        self._book = OpportunityBook()
        self._liquidator = Liquidator(
            self._scanner,
            self._book,
            self._gateway,
            self._gateway,
            settlement_timeout=engine.settlement_timeout_seconds,
        )

        self._notifiers: list[Notifier] = []
        if config.notifications.telegram.enabled:
            self._notifiers.append(TelegramNotifier(config.notifications.telegram))

    @property
    def book(self) -> OpportunityBook:
        return self._book

    @property
    def liquidator(self) -> Liquidator:
        return self._liquidator

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_address(address: str) -> str:
        if len(address) > 16:
            return f"{address[:10]}...{address[-6:]}"
        return address

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    def _build_opportunity_alert(self, opportunity: LiquidationOpportunity) -> str:
        return (
            f"🚨 LIQUIDATABLE — health {opportunity.health_ratio:.4f}\n"
            f"\n"
            f"Borrower: {self._format_address(opportunity.borrower)}\n"
            f"\n"
            f"Collateral: {opportunity.collateral_amount:,.4f} {opportunity.collateral_asset.upper()}\n"
            f"  ${opportunity.collateral_value_usd:,.2f}\n"
            f"Debt: {opportunity.debt_amount:,.4f} {opportunity.debt_asset.upper()}\n"
            f"\n"
            f"You pay: ${opportunity.you_pay:,.2f}\n"
            f"You receive: ${opportunity.you_receive:,.2f}\n"
            f"Profit: ${opportunity.profit:,.2f} ({opportunity.discount * 100:.1f}% discount)\n"
            f"\n"
            f"ID: {opportunity.id}\n"
            f"{self._now_str()} UTC"
        )

    def _build_scan_log(self, result: ScanResult, new_count: int) -> str:
        lines = [
            "📊 Liquidation scan",
            "",
            f"Borrowers scanned: {result.scanned}",
            f"Opportunities: {len(result.opportunities)} ({new_count} new)",
        ]
        if result.failures:
            lines.append(f"⚠️ Failed lookups: {len(result.failures)}")
            for failure in result.failures:
                lines.append(f"  {self._format_address(failure.borrower)}: {failure.reason}")
        lines += ["", f"{self._now_str()} UTC"]
        return "\n".join(lines)

    def _build_report(self, result: ScanResult) -> str:
        opportunities = self._book.opportunities
        if opportunities:
            body = "\n\n".join(
                f"{i}. {self._format_address(o.borrower)} · health {o.health_ratio:.4f}\n"
                f"  Seize {o.collateral_asset.upper()} ${o.collateral_value_usd:,.2f}"
                f" · repay {o.debt_asset.upper()}\n"
                f"  Profit: ${o.profit:,.2f}"
                for i, o in enumerate(opportunities, start=1)
            )
            total = sum(o.profit for o in opportunities)
            body += f"\n\nTotal potential profit: ${total:,.2f}"
        else:
            body = "No liquidation opportunities found."

        stats = self._liquidator.stats
        return (
            f"📋 Liquidation Report\n"
            f"\n"
            f"Borrowers scanned: {result.scanned} · failed: {len(result.failures)}\n"
            f"\n"
            f"{body}\n"
            f"\n"
            f"Executed: {stats.liquidations} · realized profit ${stats.total_profit:,.2f}\n"
            f"{self._now_str()} UTC"
        )

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = True) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    # ------------------------------------------------------------------
    # Core workflows
    # ------------------------------------------------------------------

    async def scan(self) -> tuple[ScanResult, list[LiquidationOpportunity]]:
        """Scan once and refresh the book. Returns the result and new opportunities."""
        result = await self._scanner.scan()
        new = self._book.update(result)
        return result, new

    async def check_and_alert(self) -> ScanResult:
        """Scan once; alert on newly detected opportunities and log the summary."""
        result, new = await self.scan()

        for opportunity in new:
            logger.info(
                "New opportunity %s: health %.4f, profit $%.2f",
                opportunity.id, opportunity.health_ratio, opportunity.profit,
            )
            await self._send_alert(
                self._build_opportunity_alert(opportunity),
                subject="🚨 Liquidation opportunity",
            )

        await self._send_log(self._build_scan_log(result, len(new)), silent=not new)
        return result

    async def generate_report(self) -> str:
        """Scan and send a ranked report of every current opportunity."""
        result, _ = await self.scan()
        report = self._build_report(result)
        await self._send_alert(report)
        logger.info("Liquidation report sent")
        return report

    async def liquidate(self, opportunity_id: str) -> Transaction:
        """Scan, then liquidate *opportunity_id* and report the outcome."""
        await self.scan()
        tx = await self._liquidator.liquidate(opportunity_id)
        await self._send_log(
            f"✅ Liquidated {opportunity_id}\n\nTransaction: {tx.hash or tx.id}\n{self._now_str()} UTC",
            silent=False,
        )
        return tx

    async def run_continuous(self, interval_seconds: int | None = None) -> None:
        """Scan forever, every *interval_seconds* (config default)."""
        interval = interval_seconds or self._config.engine.scan_interval_seconds
        logger.info("Starting continuous liquidation scan (every %d seconds)", interval)

        while True:
            try:
                await self.check_and_alert()
            except Exception as e:
                logger.error("Error in monitoring loop: %s", e)
            await asyncio.sleep(interval)
