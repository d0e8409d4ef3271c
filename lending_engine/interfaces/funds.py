"""Liquidator funds protocol — balance and allowance on the external ledger."""
from decimal import Decimal
from typing import Protocol


class FundsSource(Protocol):
    """Reports what the liquidator can pay with."""

    async def get_balance(self, asset_id: str) -> Decimal: ...

    async def get_allowance(self, asset_id: str) -> Decimal: ...
