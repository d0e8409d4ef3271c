"""Borrower enumeration protocol — used only by the liquidation side."""
from typing import Protocol

from ..models import Position


class BorrowerSource(Protocol):
    """Enumerates borrower accounts and reads their positions."""

    async def list_borrowers(self) -> list[str]: ...

    async def get_ledger(self, account_id: str) -> list[Position]: ...
