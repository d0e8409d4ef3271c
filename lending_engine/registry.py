"""Market registry and the configured market source."""
from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping
from decimal import Decimal

from .exceptions import UnknownAsset
from .interfaces.price_oracle import PriceOracle
from .models import Asset, Market

logger = logging.getLogger(__name__)


class MarketRegistry:
    """Read-only catalogue of markets keyed by asset id.

    A registry is a snapshot: repricing produces a new registry rather than
    mutating this one, so it can be shared across concurrent computations.
    """

    def __init__(self, markets: Iterable[Market]) -> None:
        self._markets: dict[str, Market] = {}
        for market in markets:
            if market.asset.id in self._markets:
                raise ValueError(f"Duplicate market for asset '{market.asset.id}'")
            self._markets[market.asset.id] = market

    def get(self, asset_id: str) -> Market:
        try:
            return self._markets[asset_id]
        except KeyError:
            raise UnknownAsset(f"No market for asset '{asset_id}'") from None

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._markets

    def __len__(self) -> int:
        return len(self._markets)

    def markets(self) -> list[Market]:
        return list(self._markets.values())

    def assets(self) -> list[Asset]:
        return [m.asset for m in self._markets.values()]

    def price(self, asset_id: str) -> Decimal:
        return self.get(asset_id).asset.price

    def with_prices(self, prices: Mapping[str, Decimal]) -> MarketRegistry:
        """Return a new registry with asset prices replaced where given."""
        repriced: list[Market] = []
        for market in self._markets.values():
            price = prices.get(market.asset.id)
            if price is None:
                repriced.append(market)
                continue
            asset = dataclasses.replace(market.asset, price=Decimal(price))
            repriced.append(dataclasses.replace(market, asset=asset))
        return MarketRegistry(repriced)


class ConfiguredMarketSource:
    """Market source built from configured risk parameters plus live oracle prices.

    Assets without an oracle feed keep their configured price.
    """

    def __init__(self, markets: Iterable[Market], oracle: PriceOracle | None = None) -> None:
        self._registry = MarketRegistry(markets)
        self._oracle = oracle

    async def _live_registry(self) -> MarketRegistry:
        if self._oracle is None:
            return self._registry
        asset_ids = [a.id for a in self._registry.assets()]
        prices = await self._oracle.fetch_prices(asset_ids)
        missing = [a for a in asset_ids if a not in prices]
        if missing:
            logger.warning(
                "No oracle price for %s, using configured price", ", ".join(missing)
            )
        return self._registry.with_prices(prices)

    async def get_markets(self) -> list[Market]:
        registry = await self._live_registry()
        return registry.markets()

    async def get_price(self, asset_id: str) -> Decimal:
        market = self._registry.get(asset_id)
        if self._oracle is None:
            return market.asset.price
        prices = await self._oracle.fetch_prices([asset_id])
        return prices.get(asset_id, market.asset.price)
