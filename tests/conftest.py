"""Shared test fixtures and sample data."""
from __future__ import annotations

import asyncio
import textwrap
from decimal import Decimal
from pathlib import Path

import pytest

from lending_engine.config import (
    AppConfig,
    AssetConfig,
    ChainConfig,
    EngineConfig,
    LiquidatorConfig,
    MarketConfig,
    NotificationsConfig,
    PriceOracleConfig,
    PythConfig,
    TelegramConfig,
)
from lending_engine.models import Asset, Market, Operation, Position, SettlementReceipt
from lending_engine.registry import MarketRegistry

D = Decimal


# ---------------------------------------------------------------------------
# Market fixtures
# ---------------------------------------------------------------------------


def _make_market(
    asset_id: str,
    price: str,
    cf: str,
    lt: str,
    *,
    decimals: int = 10,
    supplied: str = "1000000",
    borrowed: str = "0",
    stable: bool = False,
) -> Market:
    return Market(
        asset=Asset(
            id=asset_id,
            symbol=asset_id.upper(),
            name=asset_id.upper(),
            decimals=decimals,
            price=D(price),
            is_stablecoin=stable,
        ),
        collateral_factor=D(cf),
        liquidation_threshold=D(lt),
        total_supplied=D(supplied),
        total_borrowed=D(borrowed),
    )


@pytest.fixture()
def make_market():
    """Factory: make_market(asset_id, price, cf, lt, **kw) -> Market."""
    return _make_market


@pytest.fixture()
def dot_market() -> Market:
    return _make_market("dot", "5.21", "0.75", "0.80")


@pytest.fixture()
def usdt_market() -> Market:
    return _make_market("usdt", "1.00", "0.80", "0.85", decimals=6, stable=True)


@pytest.fixture()
def ksm_market() -> Market:
    return _make_market("ksm", "24.56", "0.70", "0.75", decimals=12)


@pytest.fixture()
def registry(dot_market: Market, usdt_market: Market, ksm_market: Market) -> MarketRegistry:
    return MarketRegistry([dot_market, usdt_market, ksm_market])


@pytest.fixture()
def borrowed_position() -> tuple[Position, ...]:
    """100 DOT collateral, 300 USDT debt (health ≈ 1.389, WARNING)."""
    return (
        Position("dot", supplied=D("100"), is_collateral=True),
        Position("usdt", borrowed=D("300")),
    )


# ---------------------------------------------------------------------------
# Settlement fakes
# ---------------------------------------------------------------------------


class RecordingExecutor:
    """Settlement executor that records submissions and can be held open."""

    def __init__(self) -> None:
        self.submitted: list[Operation] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self._counter = 0

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    async def submit(self, operation: Operation) -> SettlementReceipt:
        self.submitted.append(operation)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self._counter += 1
        return SettlementReceipt(hash=f"0x{self._counter:04x}")


@pytest.fixture()
def executor() -> RecordingExecutor:
    return RecordingExecutor()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.pyth.network/v2/updates/price/latest",
        feeds={"dot": "abc123", "usdt": "def456", "usdc": "def456"},
    )


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
    )


@pytest.fixture()
def sample_app_config(sample_chain_config: ChainConfig, sample_pyth_config: PythConfig) -> AppConfig:
    return AppConfig(
        engine=EngineConfig(scan_interval_seconds=5),
        markets=(
            MarketConfig(
                asset=AssetConfig(id="dot", symbol="DOT", name="Polkadot", decimals=10, price=D("5.21")),
                collateral_factor=D("0.75"),
                liquidation_threshold=D("0.80"),
                total_supplied=D("2450000"),
                total_borrowed=D("1680000"),
            ),
            MarketConfig(
                asset=AssetConfig(
                    id="usdt", symbol="USDT", name="Tether USD", decimals=6,
                    price=D("1.00"), is_stablecoin=True,
                ),
                collateral_factor=D("0.80"),
                liquidation_threshold=D("0.85"),
                total_supplied=D("8500000"),
                total_borrowed=D("6200000"),
            ),
        ),
        chain=sample_chain_config,
        liquidator=LiquidatorConfig(address="0xLIQUIDATOR"),
        price_oracle=PriceOracleConfig(provider="pyth", pyth=sample_pyth_config),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    engine:
      health:
        danger: 1.2
        warning: 1.5
      liquidation:
        threshold: 1.0
        discount: 0.05
      settlement_timeout_seconds: 20
      scan_interval_seconds: 30
    markets:
      - asset: {id: dot, symbol: DOT, name: Polkadot, decimals: 10, price: 5.21}
        collateral_factor: 0.75
        liquidation_threshold: 0.80
        total_supplied: 2450000
        total_borrowed: 1680000
      - asset: {id: usdt, symbol: USDT, name: Tether USD, decimals: 6, price: "1.00", is_stablecoin: true}
        collateral_factor: 0.80
        liquidation_threshold: 0.85
        total_supplied: 8500000
        total_borrowed: 6200000
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
    liquidator:
      address: "0xLIQ"
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {dot: "aaa", usdt: "bbb"}
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: "999"
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
