"""Health calculator — pure functions over positions and a market registry.

health ratio = Σ(supplied × price × liquidation_threshold) over collateral
               ─────────────────────────────────────────────────────────
               Σ(borrowed × price) over all debt

Borrowing power uses ``collateral_factor`` instead. The two weightings must
stay separate: the threshold is the safety margin, the factor is the limit.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Callable

from .ledger import Positions, apply_operation, find
from .models import (
    INFINITY,
    ZERO,
    HealthRatio,
    HealthStatus,
    Market,
    Operation,
    OperationKind,
    Position,
    RatioKind,
)
from .registry import MarketRegistry

# Monetary aggregation precision (significant digits).
PRECISION = 34


@dataclass(frozen=True)
class HealthThresholds:
    danger: Decimal = Decimal("1.2")
    warning: Decimal = Decimal("1.5")


DEFAULT_THRESHOLDS = HealthThresholds()


def status_for(value: Decimal, thresholds: HealthThresholds = DEFAULT_THRESHOLDS) -> HealthStatus:
    if value < thresholds.danger:
        return HealthStatus.DANGER
    if value < thresholds.warning:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def _weighted_collateral(
    positions: Iterable[Position],
    registry: MarketRegistry,
    weight: Callable[[Market], Decimal],
) -> Decimal:
    total = ZERO
    with localcontext() as ctx:
        ctx.prec = PRECISION
        for p in positions:
            if not p.is_collateral:
                continue
            market = registry.get(p.asset_id)
            total += p.supplied * market.asset.price * weight(market)
    return total


def collateral_value(positions: Iterable[Position], registry: MarketRegistry) -> Decimal:
    """Liquidation-threshold-weighted collateral value."""
    return _weighted_collateral(positions, registry, lambda m: m.liquidation_threshold)


def borrowing_power(positions: Iterable[Position], registry: MarketRegistry) -> Decimal:
    """Collateral-factor-weighted collateral value."""
    return _weighted_collateral(positions, registry, lambda m: m.collateral_factor)


def debt_value(positions: Iterable[Position], registry: MarketRegistry) -> Decimal:
    total = ZERO
    with localcontext() as ctx:
        ctx.prec = PRECISION
        for p in positions:
            if p.borrowed > 0:
                total += p.borrowed * registry.price(p.asset_id)
    return total


def compute_health(
    positions: Iterable[Position],
    registry: MarketRegistry,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> HealthRatio:
    positions = tuple(positions)
    collateral = collateral_value(positions, registry)
    debt = debt_value(positions, registry)

    if debt == 0:
        if collateral > 0:
            return HealthRatio(RatioKind.INFINITE, INFINITY, HealthStatus.HEALTHY)
        return HealthRatio(RatioKind.UNDEFINED, ZERO, HealthStatus.HEALTHY)

    with localcontext() as ctx:
        ctx.prec = PRECISION
        ratio = collateral / debt
    return HealthRatio(RatioKind.FINITE, ratio, status_for(ratio, thresholds))


def simulate_health(
    positions: Positions,
    registry: MarketRegistry,
    operation: Operation,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> HealthRatio:
    """Health ratio after *operation*, computed on a copy of *positions*.

    Raises the same ledger errors the operation itself would (e.g.
    ``InsufficientBalance`` for an over-withdrawal).
    """
    return compute_health(apply_operation(tuple(positions), operation), registry, thresholds)


def preview_health(
    positions: Positions,
    registry: MarketRegistry,
    operation: Operation,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> tuple[HealthRatio, HealthRatio]:
    """Return ``(before, after)`` for rendering a live preview."""
    return (
        compute_health(positions, registry, thresholds),
        simulate_health(positions, registry, operation, thresholds),
    )


# ---------------------------------------------------------------------------
# Max amounts
# ---------------------------------------------------------------------------


def max_borrowable(positions: Iterable[Position], registry: MarketRegistry) -> Decimal:
    """Remaining borrowing power in USD. Negative when already over the limit."""
    positions = tuple(positions)
    return borrowing_power(positions, registry) - debt_value(positions, registry)


def max_borrow_amount(
    positions: Iterable[Position], registry: MarketRegistry, asset_id: str
) -> Decimal:
    """Largest amount of *asset_id* the account may borrow right now."""
    market = registry.get(asset_id)
    headroom = max_borrowable(positions, registry)
    if headroom <= 0 or market.asset.price <= 0:
        return ZERO
    return max(ZERO, min(headroom / market.asset.price, market.available))


def max_repay_amount(positions: Iterable[Position], asset_id: str) -> Decimal:
    p = find(positions, asset_id)
    return p.borrowed if p else ZERO


def max_withdraw_amount(
    positions: Positions,
    registry: MarketRegistry,
    asset_id: str,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
) -> Decimal:
    """Largest withdrawal of *asset_id* that keeps the account out of danger.

    Health is monotonic in supplied collateral, so bisect down to the asset's
    smallest unit.
    """
    positions = tuple(positions)
    p = find(positions, asset_id)
    if p is None or p.supplied <= 0:
        return ZERO

    def safe(amount: Decimal) -> bool:
        op = Operation(kind=OperationKind.WITHDRAW, asset_id=asset_id, amount=amount)
        return simulate_health(positions, registry, op, thresholds).status is not HealthStatus.DANGER

    if safe(p.supplied):
        return p.supplied
    if compute_health(positions, registry, thresholds).status is HealthStatus.DANGER:
        return ZERO

    unit = Decimal(1).scaleb(-registry.get(asset_id).asset.decimals)
    lo, hi = ZERO, p.supplied
    with localcontext() as ctx:
        ctx.prec = PRECISION
        while hi - lo > unit:
            mid = ((lo + hi) / 2).quantize(unit)
            if mid <= lo:
                break
            if safe(mid):
                lo = mid
            else:
                hi = mid
    return lo
