"""Data models — all frozen (immutable)."""
from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .exceptions import InvalidAmount

ZERO = Decimal("0")
INFINITY = Decimal("Infinity")


def to_amount(value: Any) -> Decimal:
    """Coerce *value* to a finite Decimal.

    Floats go through ``str`` so that ``0.1`` becomes ``Decimal("0.1")`` rather
    than its binary expansion. Raises :class:`InvalidAmount` for anything that
    is not a finite number.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be a number, got {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        if isinstance(value, float):
            value = str(value)
        try:
            amount = Decimal(value)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise InvalidAmount(f"Amount must be a number, got {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {amount}")
    return amount


# ---------------------------------------------------------------------------
# Markets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Asset:
    """A listed asset with a point-in-time price snapshot."""

    id: str
    symbol: str
    name: str
    decimals: int
    price: Decimal
    is_stablecoin: bool = False


@dataclass(frozen=True)
class Market:
    """Risk parameters and liquidity for one asset."""

    asset: Asset
    collateral_factor: Decimal
    liquidation_threshold: Decimal
    supply_apy: Decimal = ZERO
    borrow_apy: Decimal = ZERO
    total_supplied: Decimal = ZERO
    total_borrowed: Decimal = ZERO

    @property
    def available(self) -> Decimal:
        return self.total_supplied - self.total_borrowed


# ---------------------------------------------------------------------------
# Positions & health
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    """An account's supplied and borrowed amounts for one asset."""

    asset_id: str
    supplied: Decimal = ZERO
    borrowed: Decimal = ZERO
    is_collateral: bool = False

    @property
    def is_empty(self) -> bool:
        return self.supplied == 0 and self.borrowed == 0


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    DANGER = "danger"


class RatioKind(str, enum.Enum):
    FINITE = "finite"
    INFINITE = "infinite"  # no debt, nonzero collateral
    UNDEFINED = "undefined"  # no debt, no collateral


@dataclass(frozen=True)
class HealthRatio:
    """Liquidation-threshold-weighted collateral over debt value.

    ``value`` is ``Decimal("Infinity")`` for INFINITE and ``0`` for UNDEFINED,
    so ordering comparisons stay meaningful; use ``kind`` to tell them apart.
    """

    kind: RatioKind
    value: Decimal
    status: HealthStatus

    @property
    def is_finite(self) -> bool:
        return self.kind is RatioKind.FINITE

    def display(self, places: int = 2) -> str:
        if self.kind is RatioKind.INFINITE:
            return "∞"
        if self.kind is RatioKind.UNDEFINED:
            return "—"
        return f"{self.value:.{places}f}"


# ---------------------------------------------------------------------------
# Operations & transactions
# ---------------------------------------------------------------------------


class OperationKind(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"
    TOGGLE_COLLATERAL = "toggle_collateral"
    LIQUIDATE = "liquidate"


@dataclass(frozen=True)
class Operation:
    """A requested state change. ``borrower`` is only set for liquidations."""

    kind: OperationKind
    asset_id: str
    amount: Decimal = ZERO
    borrower: str | None = None


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"
    LIQUIDATE = "liquidate"
    COLLATERAL_TOGGLE = "collateral_toggle"


TRANSACTION_TYPES: dict[OperationKind, TransactionType] = {
    OperationKind.DEPOSIT: TransactionType.DEPOSIT,
    OperationKind.WITHDRAW: TransactionType.WITHDRAW,
    OperationKind.BORROW: TransactionType.BORROW,
    OperationKind.REPAY: TransactionType.REPAY,
    OperationKind.TOGGLE_COLLATERAL: TransactionType.COLLATERAL_TOGGLE,
    OperationKind.LIQUIDATE: TransactionType.LIQUIDATE,
}


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Transaction:
    id: str
    type: TransactionType
    asset_id: str
    amount: Decimal
    status: TransactionStatus
    timestamp: datetime
    hash: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SettlementReceipt:
    """What the settlement executor reports back for a confirmed operation."""

    hash: str | None = None


# ---------------------------------------------------------------------------
# Liquidations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LiquidationOpportunity:
    id: str
    borrower: str
    health_ratio: Decimal
    collateral_asset: str
    collateral_amount: Decimal
    collateral_value_usd: Decimal
    debt_asset: str
    debt_amount: Decimal
    discount: Decimal
    you_pay: Decimal
    you_receive: Decimal
    profit: Decimal
    last_updated: datetime


@dataclass(frozen=True)
class ScanFailure:
    borrower: str
    reason: str


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one scan. Opportunities are ranked by profit, highest first."""

    opportunities: tuple[LiquidationOpportunity, ...] = ()
    failures: tuple[ScanFailure, ...] = ()
    scanned: int = 0


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def as_dict(obj: Any) -> dict[str, Any]:
    """Return a JSON-safe dict for any model above."""
    return _plain(dataclasses.asdict(obj))
