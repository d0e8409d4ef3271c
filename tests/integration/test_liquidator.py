"""Integration tests for two-phase liquidation."""
from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from lending_engine.exceptions import (
    ExternalFailure,
    ExternalTimeout,
    InsufficientAllowance,
    InsufficientBalance,
    OpportunityNotFound,
    StillHealthy,
)
from lending_engine.liquidator import Liquidator
from lending_engine.models import OperationKind, Position, TransactionStatus, TransactionType
from lending_engine.registry import MarketRegistry
from lending_engine.scanner import LiquidationScanner, OpportunityBook

D = Decimal

UNDERWATER = [
    Position("dot", supplied=D("50"), is_collateral=True),
    Position("usdt", borrowed=D("250")),
]


@pytest.fixture()
def crashed(registry: MarketRegistry) -> MarketRegistry:
    return registry.with_prices({"dot": D("4.00")})


@pytest.fixture()
def ledgers() -> dict[str, list[Position]]:
    return {"0xB": list(UNDERWATER)}


@pytest.fixture()
def scanner(crashed: MarketRegistry, ledgers: dict) -> LiquidationScanner:
    market_source = AsyncMock()
    market_source.get_markets.return_value = crashed.markets()
    borrower_source = AsyncMock()
    borrower_source.list_borrowers.side_effect = lambda: list(ledgers)
    borrower_source.get_ledger.side_effect = lambda account_id: ledgers[account_id]
    return LiquidationScanner(market_source, borrower_source, fetch_timeout=0.5)


@pytest.fixture()
def funds() -> AsyncMock:
    source = AsyncMock()
    source.get_balance.return_value = D("1000")
    source.get_allowance.return_value = D("1000")
    return source


@pytest_asyncio.fixture()
async def book(scanner: LiquidationScanner) -> OpportunityBook:
    book = OpportunityBook()
    book.update(await scanner.scan())
    return book


@pytest.fixture()
def liquidator(scanner, book, executor, funds) -> Liquidator:
    return Liquidator(scanner, book, executor, funds, settlement_timeout=0.2)


class TestLiquidate:
    @pytest.mark.asyncio
    async def test_success(self, liquidator: Liquidator, book: OpportunityBook, executor) -> None:
        tx = await liquidator.liquidate("liq-0xB-dot")

        assert tx.status is TransactionStatus.SUCCESS
        assert tx.type is TransactionType.LIQUIDATE
        assert tx.asset_id == "dot"
        assert tx.amount == D("50")
        assert tx.hash == "0x0001"

        op = executor.submitted[0]
        assert op.kind is OperationKind.LIQUIDATE
        assert op.borrower == "0xB"
        assert op.asset_id == "usdt"
        assert op.amount == D("250")

        assert "liq-0xB-dot" not in book
        assert liquidator.stats.liquidations == 1
        assert liquidator.stats.total_profit == D("10")

    @pytest.mark.asyncio
    async def test_unknown_opportunity(self, liquidator: Liquidator) -> None:
        with pytest.raises(OpportunityNotFound):
            await liquidator.liquidate("liq-0xNOPE-dot")

    @pytest.mark.asyncio
    async def test_still_healthy_after_repay(
        self, liquidator: Liquidator, book: OpportunityBook, ledgers: dict, executor
    ) -> None:
        ledgers["0xB"] = [Position("dot", supplied=D("50"), is_collateral=True), Position("usdt", borrowed=D("10"))]

        with pytest.raises(StillHealthy):
            await liquidator.liquidate("liq-0xB-dot")

        assert executor.submitted == []
        assert "liq-0xB-dot" in book
        assert liquidator.stats.liquidations == 0
        assert len(liquidator.transactions) == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, liquidator: Liquidator, funds, executor) -> None:
        funds.get_balance.return_value = D("189.99")
        with pytest.raises(InsufficientBalance, match="190"):
            await liquidator.liquidate("liq-0xB-dot")
        assert executor.submitted == []

    @pytest.mark.asyncio
    async def test_insufficient_allowance(self, liquidator: Liquidator, funds, executor) -> None:
        funds.get_allowance.return_value = D("0")
        with pytest.raises(InsufficientAllowance):
            await liquidator.liquidate("liq-0xB-dot")
        assert executor.submitted == []

    @pytest.mark.asyncio
    async def test_exact_funds_are_enough(self, liquidator: Liquidator, funds) -> None:
        funds.get_balance.return_value = D("190")
        funds.get_allowance.return_value = D("190")
        tx = await liquidator.liquidate("liq-0xB-dot")
        assert tx.status is TransactionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_settlement_failure(
        self, liquidator: Liquidator, book: OpportunityBook, executor
    ) -> None:
        executor.error = RuntimeError("reverted")
        with pytest.raises(ExternalFailure, match="reverted"):
            await liquidator.liquidate("liq-0xB-dot")

        tx = liquidator.transactions.entries()[0]
        assert tx.status is TransactionStatus.ERROR
        assert "reverted" in tx.error
        assert "liq-0xB-dot" in book
        assert liquidator.stats.liquidations == 0

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, liquidator: Liquidator, book: OpportunityBook, executor) -> None:
        executor.hold()
        with pytest.raises(ExternalTimeout):
            await liquidator.liquidate("liq-0xB-dot")

        assert liquidator.transactions.entries()[0].status is TransactionStatus.ERROR
        assert "liq-0xB-dot" in book

    @pytest.mark.asyncio
    async def test_funds_lookup_timeout(self, liquidator: Liquidator, funds) -> None:
        async def hang(asset_id: str) -> Decimal:
            await asyncio.sleep(5)
            return D("0")

        funds.get_balance.side_effect = hang
        with pytest.raises(ExternalTimeout, match="get_balance"):
            await liquidator.liquidate("liq-0xB-dot")

    @pytest.mark.asyncio
    async def test_receipt_without_hash(self, liquidator: Liquidator, book: OpportunityBook, executor) -> None:
        async def no_receipt(operation):
            return None

        executor.submit = no_receipt
        tx = await liquidator.liquidate("liq-0xB-dot")

        assert tx.status is TransactionStatus.SUCCESS
        assert tx.hash is None
        assert "liq-0xB-dot" not in book
        assert liquidator.stats.liquidations == 1
