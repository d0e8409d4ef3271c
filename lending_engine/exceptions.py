"""Exception hierarchy for the lending risk engine.

Every rejection names the invariant it guards so callers can show the user
*why* an operation failed, not just that it did.
"""
from __future__ import annotations


class LendingError(Exception):
    """Base exception for all engine errors."""


class InvalidAmount(LendingError):
    """Raised for non-positive, non-finite or malformed amounts."""


class InsufficientBalance(LendingError):
    """Raised when a withdrawal exceeds the tracked supply or funds fall short."""


class InsufficientAllowance(InsufficientBalance):
    """Raised when the liquidator's allowance is below the amount to pay."""


class InsufficientCollateral(LendingError):
    """Raised when a borrow exceeds the account's borrowing power."""


class InsufficientLiquidity(LendingError):
    """Raised when a borrow exceeds the market's available liquidity."""


class LiquidationRisk(LendingError):
    """Raised when a withdrawal or collateral toggle would leave the account in danger."""


class NoOutstandingLoan(LendingError):
    """Raised when repaying an asset with no debt."""


class NoPosition(LendingError):
    """Raised when toggling collateral on an asset the account does not hold."""


class StillHealthy(LendingError):
    """Raised when a liquidation target is no longer below the threshold."""


class UnknownAsset(LendingError):
    """Raised when an asset id is not in the market registry."""


class OpportunityNotFound(LendingError):
    """Raised when a liquidation opportunity id is not in the book."""


class OperationCancelled(LendingError):
    """Raised (and recorded) when a queued operation is cancelled before settlement."""


class ExternalFailure(LendingError):
    """Wraps oracle, settlement and network errors. Always carries the cause."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        if cause is not None:
            message = f"{message}: {cause!r}"
        super().__init__(message)
        self.cause = cause


class ExternalTimeout(ExternalFailure):
    """Raised when an external fetch or settlement exceeds its time bound."""

    def __init__(
        self, operation: str, seconds: float, cause: BaseException | None = None
    ) -> None:
        super().__init__(f"{operation} timed out after {seconds:g}s", cause)
        self.operation = operation
        self.seconds = seconds
