"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import Asset, Market

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HealthConfig:
    danger: Decimal = Decimal("1.2")
    warning: Decimal = Decimal("1.5")


@dataclass(frozen=True)
class LiquidationConfig:
    threshold: Decimal = Decimal("1.0")
    discount: Decimal = Decimal("0.05")


@dataclass(frozen=True)
class EngineConfig:
    health: HealthConfig = field(default_factory=HealthConfig)
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    settlement_timeout_seconds: float = 30.0
    fetch_timeout_seconds: float = 10.0
    scan_interval_seconds: int = 60
    scan_concurrency: int = 8


@dataclass(frozen=True)
class AssetConfig:
    id: str = ""
    symbol: str = ""
    name: str = ""
    decimals: int = 18
    price: Decimal = Decimal("0")
    is_stablecoin: bool = False


@dataclass(frozen=True)
class MarketConfig:
    asset: AssetConfig = field(default_factory=AssetConfig)
    collateral_factor: Decimal = Decimal("0")
    liquidation_threshold: Decimal = Decimal("0")
    supply_apy: Decimal = Decimal("0")
    borrow_apy: Decimal = Decimal("0")
    total_supplied: Decimal = Decimal("0")
    total_borrowed: Decimal = Decimal("0")


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30


@dataclass(frozen=True)
class LiquidatorConfig:
    address: str = ""


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    markets: tuple[MarketConfig, ...] = ()
    chain: ChainConfig = field(default_factory=ChainConfig)
    liquidator: LiquidatorConfig = field(default_factory=LiquidatorConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


def _decimal(value: Any, name: str) -> Decimal:
    """Parse a YAML scalar as Decimal via its string form."""
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"'{name}' must be a number, got {value!r}") from e


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_engine(raw: dict[str, Any]) -> EngineConfig:
    health = raw.get("health", {})
    liquidation = raw.get("liquidation", {})
    return EngineConfig(
        health=HealthConfig(
            danger=_decimal(health.get("danger", "1.2"), "health.danger"),
            warning=_decimal(health.get("warning", "1.5"), "health.warning"),
        ),
        liquidation=LiquidationConfig(
            threshold=_decimal(liquidation.get("threshold", "1.0"), "liquidation.threshold"),
            discount=_decimal(liquidation.get("discount", "0.05"), "liquidation.discount"),
        ),
        settlement_timeout_seconds=float(raw.get("settlement_timeout_seconds", 30.0)),
        fetch_timeout_seconds=float(raw.get("fetch_timeout_seconds", 10.0)),
        scan_interval_seconds=int(raw.get("scan_interval_seconds", 60)),
        scan_concurrency=int(raw.get("scan_concurrency", 8)),
    )


def _build_markets(raw: list[dict[str, Any]]) -> tuple[MarketConfig, ...]:
    markets: list[MarketConfig] = []
    for m in raw:
        a = m.get("asset", {})
        asset_id = str(a.get("id", ""))
        markets.append(
            MarketConfig(
                asset=AssetConfig(
                    id=asset_id,
                    symbol=a.get("symbol", asset_id.upper()),
                    name=a.get("name", ""),
                    decimals=int(a.get("decimals", 18)),
                    price=_decimal(a.get("price", 0), f"{asset_id}.price"),
                    is_stablecoin=bool(a.get("is_stablecoin", False)),
                ),
                collateral_factor=_decimal(m.get("collateral_factor", 0), f"{asset_id}.collateral_factor"),
                liquidation_threshold=_decimal(
                    m.get("liquidation_threshold", 0), f"{asset_id}.liquidation_threshold"
                ),
                supply_apy=_decimal(m.get("supply_apy", 0), f"{asset_id}.supply_apy"),
                borrow_apy=_decimal(m.get("borrow_apy", 0), f"{asset_id}.borrow_apy"),
                total_supplied=_decimal(m.get("total_supplied", 0), f"{asset_id}.total_supplied"),
                total_borrowed=_decimal(m.get("total_borrowed", 0), f"{asset_id}.total_borrowed"),
            )
        )
    return tuple(markets)


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(e for e in raw.get("rpc_endpoints", []) if e),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        engine=_build_engine(raw.get("engine", {})),
        markets=_build_markets(raw.get("markets", [])),
        chain=_build_chain(raw.get("chain", {})),
        liquidator=LiquidatorConfig(address=raw.get("liquidator", {}).get("address", "")),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s (%d markets)", config_path, len(cfg.markets))
    return cfg


def build_markets(cfg: AppConfig) -> list[Market]:
    """Turn configured markets into engine ``Market`` objects."""
    return [
        Market(
            asset=Asset(
                id=m.asset.id,
                symbol=m.asset.symbol,
                name=m.asset.name,
                decimals=m.asset.decimals,
                price=m.asset.price,
                is_stablecoin=m.asset.is_stablecoin,
            ),
            collateral_factor=m.collateral_factor,
            liquidation_threshold=m.liquidation_threshold,
            supply_apy=m.supply_apy,
            borrow_apy=m.borrow_apy,
            total_supplied=m.total_supplied,
            total_borrowed=m.total_borrowed,
        )
        for m in cfg.markets
    ]


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.markets:
        raise ValueError("At least one market must be configured")

    seen: set[str] = set()
    for m in cfg.markets:
        asset_id = m.asset.id
        if not asset_id:
            raise ValueError("Market asset has no id")
        if asset_id in seen:
            raise ValueError(f"Duplicate market '{asset_id}'")
        seen.add(asset_id)
        for name in ("collateral_factor", "liquidation_threshold"):
            value = getattr(m, name)
            if not 0 <= value <= 1:
                raise ValueError(f"Market '{asset_id}' {name} must be within [0, 1], got {value}")
        if m.liquidation_threshold < m.collateral_factor:
            raise ValueError(
                f"Market '{asset_id}' liquidation_threshold ({m.liquidation_threshold}) "
                f"must be >= collateral_factor ({m.collateral_factor})"
            )
        if m.total_borrowed > m.total_supplied:
            raise ValueError(
                f"Market '{asset_id}' total_borrowed exceeds total_supplied"
            )
        if m.asset.price < 0:
            raise ValueError(f"Market '{asset_id}' price must not be negative")

    health = cfg.engine.health
    if health.danger >= health.warning:
        raise ValueError(
            f"health.danger ({health.danger}) must be below health.warning ({health.warning})"
        )
    discount = cfg.engine.liquidation.discount
    if not 0 <= discount < 1:
        raise ValueError(f"liquidation.discount must be within [0, 1), got {discount}")
