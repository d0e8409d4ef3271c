"""Market source protocol — market parameters and prices."""
from decimal import Decimal
from typing import Protocol

from ..models import Market


class MarketSource(Protocol):
    """Read-only source of market parameters and prices. Never written to."""

    async def get_markets(self) -> list[Market]: ...

    async def get_price(self, asset_id: str) -> Decimal: ...
