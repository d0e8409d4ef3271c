"""Two-phase liquidation execution.

Phase 1 re-reads the target's ledger and the liquidator's funds, because the
position may have been repaid or liquidated by someone else since the scan.
Phase 2 submits the liquidation for settlement. Any failure leaves the
opportunity book untouched and raises the specific reason.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal

from .exceptions import (
    ExternalFailure,
    ExternalTimeout,
    InsufficientAllowance,
    InsufficientBalance,
    LendingError,
    StillHealthy,
)
from .interfaces.funds import FundsSource
from .interfaces.settlement import SettlementExecutor
from .models import LiquidationOpportunity, Operation, OperationKind, Transaction, TransactionType
from .registry import MarketRegistry
from .scanner import LiquidationScanner, OpportunityBook
from .transactions import TransactionLog

logger = logging.getLogger(__name__)


@dataclass
class LiquidationStats:
    liquidations: int = 0
    total_profit: Decimal = Decimal("0")


class Liquidator:
    """Executes liquidations for opportunities held in an :class:`OpportunityBook`."""

    def __init__(
        self,
        scanner: LiquidationScanner,
        book: OpportunityBook,
        executor: SettlementExecutor,
        funds: FundsSource,
        *,
        log: TransactionLog | None = None,
        settlement_timeout: float = 30.0,
    ) -> None:
        self._scanner = scanner
        self._book = book
        self._executor = executor
        self._funds = funds
        self._log = log if log is not None else TransactionLog()
        self._settlement_timeout = settlement_timeout
        self.stats = LiquidationStats()

    @property
    def transactions(self) -> TransactionLog:
        return self._log

    async def revalidate(self, opportunity: LiquidationOpportunity) -> LiquidationOpportunity:
        """Phase 1: confirm the target is still liquidatable and we can pay for it.

        Returns the refreshed opportunity. The book is not touched here; a
        recovered target drops out on the next scan.
        """
        registry: MarketRegistry = await self._scanner.load_registry()
        positions = await self._scanner.fetch_ledger(opportunity.borrower)
        fresh = self._scanner.evaluate(opportunity.borrower, positions, registry)
        if fresh is None:
            raise StillHealthy(
                f"Borrower {opportunity.borrower} is no longer below the liquidation "
                f"threshold {self._scanner.liquidation_threshold}"
            )

        # Amount of debt asset needed to cover what we pay.
        debt_price = registry.price(fresh.debt_asset)
        required = fresh.you_pay / debt_price if debt_price > 0 else fresh.you_pay

        balance = await self._scanner.bounded("get_balance", self._funds.get_balance(fresh.debt_asset))
        if balance < required:
            raise InsufficientBalance(
                f"Liquidation needs {required:.6f} {fresh.debt_asset}, balance is {balance}"
            )
        allowance = await self._scanner.bounded(
            "get_allowance", self._funds.get_allowance(fresh.debt_asset)
        )
        if allowance < required:
            raise InsufficientAllowance(
                f"Liquidation needs {required:.6f} {fresh.debt_asset}, allowance is {allowance}"
            )
        return fresh

    def _fail(self, tx: Transaction, error: LendingError) -> None:
        self._log.mark_error(tx.id, f"{type(error).__name__}: {error}")

    async def liquidate(self, opportunity_id: str) -> Transaction:
        opportunity = self._book.get(opportunity_id)
        logger.info(
            "Liquidating %s (borrower %s, health %.4f)",
            opportunity.id, opportunity.borrower, opportunity.health_ratio,
        )
        try:
            fresh = await self.revalidate(opportunity)
        except LendingError as e:
            logger.warning("Liquidation of %s rejected: %s", opportunity.id, e)
            raise

        tx = self._log.record(TransactionType.LIQUIDATE, fresh.collateral_asset, fresh.collateral_amount)
        operation = Operation(
            kind=OperationKind.LIQUIDATE,
            asset_id=fresh.debt_asset,
            amount=fresh.debt_amount,
            borrower=fresh.borrower,
        )
        try:
            receipt = await asyncio.wait_for(
                self._executor.submit(operation), timeout=self._settlement_timeout
            )
        except asyncio.TimeoutError as e:
            error = ExternalTimeout("liquidation settlement", self._settlement_timeout, e)
            self._fail(tx, error)
            raise error from e
        except LendingError as e:
            self._fail(tx, e)
            raise
        except Exception as e:
            failure = ExternalFailure("liquidation settlement failed", e)
            self._fail(tx, failure)
            raise failure from e

        tx_hash = getattr(receipt, "hash", None)
        self._book.remove(opportunity.id)
        self.stats.liquidations += 1
        self.stats.total_profit += fresh.profit
        logger.info(
            "Liquidated %s: profit $%.2f (total $%.2f over %d)",
            opportunity.id, fresh.profit, self.stats.total_profit, self.stats.liquidations,
        )
        return self._log.mark_success(tx.id, tx_hash)
