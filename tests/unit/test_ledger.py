"""Unit tests for ledger state transitions."""
from __future__ import annotations

from decimal import Decimal

import pytest

from lending_engine import ledger
from lending_engine.exceptions import (
    InsufficientBalance,
    InvalidAmount,
    NoOutstandingLoan,
    NoPosition,
)
from lending_engine.ledger import Ledger
from lending_engine.models import Operation, OperationKind, Position

D = Decimal


class TestDeposit:
    def test_creates_collateral_position(self) -> None:
        after = ledger.deposit((), "dot", D("100"))
        assert after == (Position("dot", supplied=D("100"), is_collateral=True),)

    def test_adds_to_existing_and_enables_collateral(self) -> None:
        before = (Position("dot", supplied=D("10"), is_collateral=False),)
        after = ledger.deposit(before, "dot", D("5"))
        assert after[0].supplied == D("15")
        assert after[0].is_collateral

    @pytest.mark.parametrize("amount", [D("0"), D("-1")])
    def test_rejects_non_positive(self, amount: Decimal) -> None:
        with pytest.raises(InvalidAmount):
            ledger.deposit((), "dot", amount)

    def test_does_not_mutate_input(self) -> None:
        before = (Position("dot", supplied=D("10"), is_collateral=True),)
        ledger.deposit(before, "dot", D("5"))
        assert before[0].supplied == D("10")


class TestWithdraw:
    def test_partial(self) -> None:
        before = (Position("dot", supplied=D("100"), is_collateral=True),)
        after = ledger.withdraw(before, "dot", D("40"))
        assert after[0].supplied == D("60")

    def test_full_withdraw_removes_empty_position(self) -> None:
        before = (Position("dot", supplied=D("100"), is_collateral=True),)
        assert ledger.withdraw(before, "dot", D("100")) == ()

    def test_more_than_supplied(self) -> None:
        before = (Position("dot", supplied=D("100"), is_collateral=True),)
        with pytest.raises(InsufficientBalance):
            ledger.withdraw(before, "dot", D("100.01"))

    def test_no_position(self) -> None:
        with pytest.raises(InsufficientBalance):
            ledger.withdraw((), "dot", D("1"))


class TestBorrow:
    def test_new_borrow_position_is_not_collateral(self) -> None:
        after = ledger.borrow((), "usdt", D("300"))
        assert after == (Position("usdt", borrowed=D("300"), is_collateral=False),)

    def test_borrow_against_own_supply_keeps_flag(self) -> None:
        before = (Position("usdt", supplied=D("50"), is_collateral=True),)
        after = ledger.borrow(before, "usdt", D("10"))
        assert after[0].borrowed == D("10")
        assert after[0].is_collateral


class TestRepay:
    def test_partial(self) -> None:
        before = (Position("usdt", borrowed=D("300")),)
        assert ledger.repay(before, "usdt", D("100"))[0].borrowed == D("200")

    def test_clamped_to_debt(self) -> None:
        before = (Position("usdt", borrowed=D("300")),)
        assert ledger.repay_amount(before, "usdt", D("500")) == D("300")
        assert ledger.repay(before, "usdt", D("500")) == ()

    def test_no_outstanding_loan(self) -> None:
        before = (Position("usdt", supplied=D("10"), is_collateral=True),)
        with pytest.raises(NoOutstandingLoan):
            ledger.repay(before, "usdt", D("1"))

    def test_no_position(self) -> None:
        with pytest.raises(NoOutstandingLoan):
            ledger.repay((), "usdt", D("1"))


class TestToggleCollateral:
    def test_flips_flag(self) -> None:
        before = (Position("dot", supplied=D("1"), is_collateral=True),)
        after = ledger.toggle_collateral(before, "dot")
        assert after[0].is_collateral is False
        assert ledger.toggle_collateral(after, "dot")[0].is_collateral is True

    def test_no_position(self) -> None:
        with pytest.raises(NoPosition):
            ledger.toggle_collateral((), "dot")


class TestApplyOperation:
    def test_dispatches(self) -> None:
        op = Operation(OperationKind.DEPOSIT, "dot", D("3"))
        assert ledger.apply_operation((), op)[0].supplied == D("3")

    def test_rejects_liquidation(self) -> None:
        op = Operation(OperationKind.LIQUIDATE, "usdt", D("3"), borrower="0xabc")
        with pytest.raises(ValueError):
            ledger.apply_operation((), op)

    def test_deposit_then_withdraw_round_trip(self) -> None:
        start = (Position("dot", supplied=D("7"), is_collateral=True),)
        mid = ledger.apply_operation(start, Operation(OperationKind.DEPOSIT, "dot", D("2.5")))
        end = ledger.apply_operation(mid, Operation(OperationKind.WITHDRAW, "dot", D("2.5")))
        assert end == start


class TestLedger:
    def test_snapshot_is_immutable_tuple(self) -> None:
        led = Ledger("0xabc", [Position("dot", supplied=D("1"), is_collateral=True)])
        snap = led.snapshot()
        assert isinstance(snap, tuple)
        assert led.position("dot") == snap[0]
        assert led.position("ksm") is None

    def test_drops_empty_positions(self) -> None:
        led = Ledger("0xabc", [Position("dot"), Position("usdt", borrowed=D("1"))])
        assert len(led) == 1

    def test_commit_replaces_positions(self) -> None:
        led = Ledger("0xabc")
        led.commit((Position("dot", supplied=D("5"), is_collateral=True), Position("ksm")))
        assert len(led) == 1
        assert led.position("dot").supplied == D("5")
