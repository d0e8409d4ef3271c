"""Operation orchestrator — validation, settlement and commit for one account.

Lifecycle of an operation::

    REQUESTED → VALIDATED (queued) → PENDING (settling) → SUCCESS | ERROR

Requests are validated against the *projected* ledger (committed positions
plus every queued or in-flight operation) so two rapid requests cannot both
spend the same collateral. Settlement runs one operation at a time per
account; each operation is re-validated against the committed ledger right
before settlement and again right before commit. The ledger is only touched
after settlement succeeds.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from collections.abc import Generator
from decimal import Decimal
from typing import Any

from . import ledger as ledger_ops
from .exceptions import (
    ExternalFailure,
    ExternalTimeout,
    InsufficientCollateral,
    InsufficientLiquidity,
    InvalidAmount,
    LendingError,
    LiquidationRisk,
    OperationCancelled,
)
from .health import (
    DEFAULT_THRESHOLDS,
    HealthThresholds,
    compute_health,
    max_borrowable,
)
from .interfaces.settlement import SettlementExecutor
from .ledger import Ledger, Positions
from .models import (
    TRANSACTION_TYPES,
    HealthRatio,
    HealthStatus,
    Operation,
    OperationKind,
    Transaction,
    to_amount,
)
from .registry import MarketRegistry
from .transactions import TransactionLog

logger = logging.getLogger(__name__)

_ACCOUNT_OPERATIONS = frozenset(
    {
        OperationKind.DEPOSIT,
        OperationKind.WITHDRAW,
        OperationKind.BORROW,
        OperationKind.REPAY,
        OperationKind.TOGGLE_COLLATERAL,
    }
)


class OperationState(str, enum.Enum):
    VALIDATED = "validated"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


def normalize(operation: Operation) -> Operation:
    """Check the amount before any state is read."""
    if operation.kind not in _ACCOUNT_OPERATIONS:
        raise ValueError(f"{operation.kind.value} is not an account operation")
    if operation.kind is OperationKind.TOGGLE_COLLATERAL:
        return operation
    amount = to_amount(operation.amount)
    if amount <= 0:
        raise InvalidAmount(f"Amount must be greater than zero, got {amount}")
    return dataclasses.replace(operation, amount=amount)


def validate_operation(
    positions: Positions,
    operation: Operation,
    registry: MarketRegistry,
    thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
    *,
    reserved: Decimal = Decimal(0),
) -> Positions:
    """Check every invariant for *operation* and return the resulting positions.

    *reserved* is market liquidity already claimed by borrows of the same
    asset that are queued ahead of this one.

    Raises a :class:`LendingError` subclass naming the violated invariant.
    """
    operation = normalize(operation)
    market = registry.get(operation.asset_id)

    if operation.kind is OperationKind.BORROW:
        value = operation.amount * market.asset.price
        headroom = max_borrowable(positions, registry)
        if value > headroom:
            raise InsufficientCollateral(
                f"Borrowing {operation.amount} {market.asset.symbol} (${value:,.2f}) "
                f"exceeds borrowing power ${max(headroom, Decimal(0)):,.2f}"
            )
        available = market.available - reserved
        if operation.amount > available:
            raise InsufficientLiquidity(
                f"Borrowing {operation.amount} {market.asset.symbol} exceeds "
                f"market liquidity {max(available, Decimal(0))}"
            )

    after = ledger_ops.apply_operation(positions, operation)

    current = ledger_ops.find(positions, operation.asset_id)
    disabling = (
        operation.kind is OperationKind.TOGGLE_COLLATERAL
        and current is not None
        and current.is_collateral
    )
    if operation.kind is OperationKind.WITHDRAW or disabling:
        simulated = compute_health(after, registry, thresholds)
        if simulated.status is HealthStatus.DANGER:
            action = "Withdrawal" if operation.kind is OperationKind.WITHDRAW else "Disabling collateral"
            raise LiquidationRisk(
                f"{action} of {market.asset.symbol} would drop the health ratio to "
                f"{simulated.display()} (below {thresholds.danger})"
            )
    return after


class PendingOperation:
    """Handle for a submitted operation. Await it for the final transaction."""

    def __init__(
        self, operation: Operation, transaction_id: str, owner: OperationOrchestrator
    ) -> None:
        self.operation = operation
        self.transaction_id = transaction_id
        self.state = OperationState.VALIDATED
        self.error: LendingError | None = None
        self._owner = owner
        self._task: asyncio.Task[Transaction] | None = None

    @property
    def cancellable(self) -> bool:
        return self.state is OperationState.VALIDATED

    def cancel(self) -> bool:
        """Cancel while still queued. Returns False once settlement has begun."""
        if not self.cancellable:
            return False
        self._owner._cancel(self)
        return True

    async def wait(self) -> Transaction:
        if self._task is None:
            raise RuntimeError(f"Operation {self.transaction_id} was never scheduled")
        # Settlement must run to completion even if the waiter goes away.
        return await asyncio.shield(self._task)

    def __await__(self) -> Generator[Any, None, Transaction]:
        return self.wait().__await__()


class OperationOrchestrator:
    """Validates, settles and commits operations against one account's ledger."""

    def __init__(
        self,
        ledger: Ledger,
        registry: MarketRegistry,
        executor: SettlementExecutor,
        *,
        log: TransactionLog | None = None,
        thresholds: HealthThresholds = DEFAULT_THRESHOLDS,
        settlement_timeout: float = 30.0,
    ) -> None:
        self._ledger = ledger
        self._registry = registry
        self._executor = executor
        self._log = log if log is not None else TransactionLog()
        self._thresholds = thresholds
        self._settlement_timeout = settlement_timeout
        self._lock = asyncio.Lock()
        self._queue: list[PendingOperation] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def registry(self) -> MarketRegistry:
        return self._registry

    @property
    def transactions(self) -> TransactionLog:
        return self._log

    def update_registry(self, registry: MarketRegistry) -> None:
        """Swap in a freshly priced registry for subsequent computations."""
        self._registry = registry

    def in_flight(self) -> list[PendingOperation]:
        return list(self._queue)

    def projected_positions(self) -> Positions:
        """Committed positions with every queued and in-flight operation applied."""
        positions = self._ledger.snapshot()
        for pending in self._queue:
            try:
                positions = ledger_ops.apply_operation(positions, pending.operation)
            except LendingError:
                # Will fail its own re-validation; it cannot change the ledger.
                continue
        return positions

    def _queued_borrows(self, asset_id: str) -> Decimal:
        return sum(
            (
                p.operation.amount
                for p in self._queue
                if p.operation.kind is OperationKind.BORROW
                and p.operation.asset_id == asset_id
                and p.state is not OperationState.ERROR
            ),
            Decimal(0),
        )

    def health(self) -> HealthRatio:
        return compute_health(self._ledger.snapshot(), self._registry, self._thresholds)

    def projected_health(self) -> HealthRatio:
        return compute_health(self.projected_positions(), self._registry, self._thresholds)

    def preview(self, operation: Operation) -> tuple[HealthRatio, HealthRatio]:
        """``(before, after)`` health for *operation* on top of the projected state."""
        positions = self.projected_positions()
        before = compute_health(positions, self._registry, self._thresholds)
        after = ledger_ops.apply_operation(positions, normalize(operation))
        return before, compute_health(after, self._registry, self._thresholds)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def submit(self, operation: Operation) -> PendingOperation:
        """Validate *operation* and queue it for settlement.

        Validation errors raise here, synchronously, with the ledger unchanged.
        Must be called from a running event loop.
        """
        logger.info(
            "Operation requested: %s %s %s (account %s)",
            operation.kind.value, operation.amount, operation.asset_id,
            self._ledger.account_id,
        )
        projected = self.projected_positions()
        try:
            operation = normalize(operation)
            validate_operation(
                projected, operation, self._registry, self._thresholds,
                reserved=self._queued_borrows(operation.asset_id),
            )
        except LendingError as e:
            logger.warning("Operation rejected: %s", e)
            raise

        amount = operation.amount
        if operation.kind is OperationKind.REPAY:
            amount = ledger_ops.repay_amount(projected, operation.asset_id, amount)

        tx = self._log.record(TRANSACTION_TYPES[operation.kind], operation.asset_id, amount)
        pending = PendingOperation(operation, tx.id, self)
        self._queue.append(pending)
        pending._task = asyncio.get_running_loop().create_task(self._run(pending))
        return pending

    async def execute(self, operation: Operation) -> Transaction:
        """Submit *operation* and wait for its terminal transaction."""
        return await self.submit(operation).wait()

    async def deposit(self, asset_id: str, amount: Any) -> Transaction:
        return await self.execute(Operation(OperationKind.DEPOSIT, asset_id, amount))

    async def withdraw(self, asset_id: str, amount: Any) -> Transaction:
        return await self.execute(Operation(OperationKind.WITHDRAW, asset_id, amount))

    async def borrow(self, asset_id: str, amount: Any) -> Transaction:
        return await self.execute(Operation(OperationKind.BORROW, asset_id, amount))

    async def repay(self, asset_id: str, amount: Any) -> Transaction:
        return await self.execute(Operation(OperationKind.REPAY, asset_id, amount))

    async def toggle_collateral(self, asset_id: str) -> Transaction:
        return await self.execute(Operation(OperationKind.TOGGLE_COLLATERAL, asset_id))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _cancel(self, pending: PendingOperation) -> None:
        error = OperationCancelled(
            f"{pending.operation.kind.value} {pending.operation.asset_id} cancelled before settlement"
        )
        self._fail(pending, error)
        if pending in self._queue:
            self._queue.remove(pending)

    def _fail(self, pending: PendingOperation, error: LendingError) -> Transaction:
        pending.state = OperationState.ERROR
        pending.error = error
        return self._log.mark_error(pending.transaction_id, f"{type(error).__name__}: {error}")

    async def _run(self, pending: PendingOperation) -> Transaction:
        try:
            async with self._lock:
                if pending.state is OperationState.ERROR:
                    return self._log.get(pending.transaction_id)
                return await self._settle(pending)
        finally:
            if pending in self._queue:
                self._queue.remove(pending)

    async def _settle(self, pending: PendingOperation) -> Transaction:
        op = pending.operation
        try:
            validate_operation(self._ledger.snapshot(), op, self._registry, self._thresholds)
        except LendingError as e:
            logger.warning("Operation %s no longer valid: %s", pending.transaction_id, e)
            return self._fail(pending, e)

        pending.state = OperationState.PENDING
        logger.info("Settling %s: %s %s %s", pending.transaction_id, op.kind.value, op.amount, op.asset_id)
        try:
            receipt = await asyncio.wait_for(
                self._executor.submit(op), timeout=self._settlement_timeout
            )
        except asyncio.TimeoutError as e:
            return self._fail(pending, ExternalTimeout("settlement", self._settlement_timeout, e))
        except LendingError as e:
            return self._fail(pending, e)
        except Exception as e:
            return self._fail(pending, ExternalFailure("settlement failed", e))

        tx_hash = getattr(receipt, "hash", None)
        try:
            positions = validate_operation(
                self._ledger.snapshot(), op, self._registry, self._thresholds
            )
            self._ledger.commit(positions)
        except LendingError as e:
            logger.error("Commit of %s rejected after settlement: %s", pending.transaction_id, e)
            return self._fail(pending, e)
        except Exception as e:
            logger.error("Commit of %s failed: %s", pending.transaction_id, e)
            return self._fail(pending, ExternalFailure("commit failed", e))

        pending.state = OperationState.SUCCESS
        return self._log.mark_success(pending.transaction_id, tx_hash)
