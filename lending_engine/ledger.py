"""Position ledger — per-account positions and their pure state transitions.

The transition functions take a positions tuple and return a new one; they
never mutate their input. Solvency checks that need market data live in
:mod:`lending_engine.orchestrator`; the checks here only concern the
account's own balances.
"""
from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from decimal import Decimal

from .exceptions import InsufficientBalance, InvalidAmount, NoOutstandingLoan, NoPosition
from .models import Operation, OperationKind, Position, to_amount

logger = logging.getLogger(__name__)

Positions = tuple[Position, ...]


def _positive(amount: Decimal) -> Decimal:
    amount = to_amount(amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be greater than zero, got {amount}")
    return amount


def find(positions: Iterable[Position], asset_id: str) -> Position | None:
    for p in positions:
        if p.asset_id == asset_id:
            return p
    return None


def _replace(positions: Positions, updated: Position) -> Positions:
    """Swap in *updated*, dropping it if both balances are zero."""
    result: list[Position] = []
    found = False
    for p in positions:
        if p.asset_id == updated.asset_id:
            found = True
            if not updated.is_empty:
                result.append(updated)
        else:
            result.append(p)
    if not found and not updated.is_empty:
        result.append(updated)
    return tuple(result)


def deposit(positions: Positions, asset_id: str, amount: Decimal) -> Positions:
    """Add supply. Depositing opts the asset into collateral use."""
    amount = _positive(amount)
    current = find(positions, asset_id) or Position(asset_id=asset_id)
    return _replace(
        positions,
        dataclasses.replace(current, supplied=current.supplied + amount, is_collateral=True),
    )


def withdraw(positions: Positions, asset_id: str, amount: Decimal) -> Positions:
    amount = _positive(amount)
    current = find(positions, asset_id)
    supplied = current.supplied if current else Decimal(0)
    if current is None or supplied < amount:
        raise InsufficientBalance(
            f"Cannot withdraw {amount} {asset_id}: only {supplied} supplied"
        )
    return _replace(positions, dataclasses.replace(current, supplied=supplied - amount))


def borrow(positions: Positions, asset_id: str, amount: Decimal) -> Positions:
    """Add debt. A new position created by borrowing is not collateral."""
    amount = _positive(amount)
    current = find(positions, asset_id) or Position(asset_id=asset_id)
    return _replace(positions, dataclasses.replace(current, borrowed=current.borrowed + amount))


def _loan(positions: Iterable[Position], asset_id: str) -> Position:
    current = find(positions, asset_id)
    if current is None or current.borrowed <= 0:
        raise NoOutstandingLoan(f"No outstanding loan for {asset_id}")
    return current


def repay_amount(positions: Iterable[Position], asset_id: str, amount: Decimal) -> Decimal:
    """Return the effective repay amount, clamped to the outstanding debt."""
    amount = _positive(amount)
    return min(amount, _loan(positions, asset_id).borrowed)


def repay(positions: Positions, asset_id: str, amount: Decimal) -> Positions:
    amount = _positive(amount)
    current = _loan(positions, asset_id)
    effective = min(amount, current.borrowed)
    return _replace(positions, dataclasses.replace(current, borrowed=current.borrowed - effective))


def toggle_collateral(positions: Positions, asset_id: str) -> Positions:
    current = find(positions, asset_id)
    if current is None:
        raise NoPosition(f"No position for {asset_id}")
    return _replace(positions, dataclasses.replace(current, is_collateral=not current.is_collateral))


def apply_operation(positions: Positions, operation: Operation) -> Positions:
    """Apply one account-level operation to *positions*."""
    kind = operation.kind
    if kind is OperationKind.DEPOSIT:
        return deposit(positions, operation.asset_id, operation.amount)
    if kind is OperationKind.WITHDRAW:
        return withdraw(positions, operation.asset_id, operation.amount)
    if kind is OperationKind.BORROW:
        return borrow(positions, operation.asset_id, operation.amount)
    if kind is OperationKind.REPAY:
        return repay(positions, operation.asset_id, operation.amount)
    if kind is OperationKind.TOGGLE_COLLATERAL:
        return toggle_collateral(positions, operation.asset_id)
    raise ValueError(f"{kind.value} is not an account ledger operation")


class Ledger:
    """Holds one account's committed positions.

    Reads return immutable snapshots. ``commit`` is the only mutation and is
    called by the orchestrator after settlement succeeds.
    """

    def __init__(self, account_id: str, positions: Iterable[Position] = ()) -> None:
        self.account_id = account_id
        self._positions: Positions = ()
        for p in positions:
            self._positions = _replace(self._positions, p)

    def snapshot(self) -> Positions:
        return self._positions

    def position(self, asset_id: str) -> Position | None:
        return find(self._positions, asset_id)

    def commit(self, positions: Positions) -> None:
        self._positions = tuple(p for p in positions if not p.is_empty)
        logger.debug("Ledger %s committed %d positions", self.account_id, len(self._positions))

    def __len__(self) -> int:
        return len(self._positions)
