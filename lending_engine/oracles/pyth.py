"""Pyth Network price oracle service."""
from __future__ import annotations

import asyncio
import logging
import ssl
from decimal import Decimal

import aiohttp
import certifi

from ..config import PythConfig
from ..exceptions import ExternalFailure, ExternalTimeout

logger = logging.getLogger(__name__)


class PythOracle:
    """Fetch asset prices from the Pyth Hermes API, keyed by asset id."""

    def __init__(self, config: PythConfig, timeout: float = 10.0) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    @staticmethod
    def _parse_price(price_data: dict) -> Decimal:
        """Hermes returns an integer mantissa plus a base-10 exponent."""
        return Decimal(int(price_data.get("price", 0))).scaleb(int(price_data.get("expo", 0)))

    async def fetch_prices(self, asset_ids: list[str] | None = None) -> dict[str, Decimal]:
        """Fetch current prices from Pyth Network.

        Args:
            asset_ids: Optional list of asset ids to fetch. If None, fetches
                all configured feeds. Assets without a configured feed are
                left out of the result.

        Raises:
            ExternalFailure: Hermes answered with a non-200 status or could
                not be reached.
            ExternalTimeout: Hermes did not answer within ``timeout``.
        """
        prices: dict[str, Decimal] = {}

        feeds = self.price_feeds
        if asset_ids is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in asset_ids}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return prices

        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        raise ExternalFailure(f"Pyth returned HTTP {response.status}")
                    data = await response.json()
        except asyncio.TimeoutError as e:
            raise ExternalTimeout("Pyth price fetch", self.timeout, e) from e
        except aiohttp.ClientError as e:
            raise ExternalFailure("Pyth price fetch failed", e) from e

        # Several assets may share one feed (e.g. bridged variants).
        id_to_assets: dict[str, list[str]] = {}
        for asset_id, feed_id in feeds.items():
            id_to_assets.setdefault(feed_id.lower().removeprefix("0x"), []).append(asset_id)

        for item in data.get("parsed", []):
            feed_id = str(item.get("id", "")).lower().removeprefix("0x")
            price = self._parse_price(item.get("price", {}))
            for asset_id in id_to_assets.get(feed_id, []):
                prices[asset_id] = price

        logger.info("Fetched %d prices from Pyth Network", len(prices))
        for asset_id, price in sorted(prices.items()):
            logger.debug("  %s: $%.4f", asset_id, price)

        return prices
