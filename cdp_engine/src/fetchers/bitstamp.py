"""Bitstamp fetcher.

Endpoint: https://www.bitstamp.net/api/v2/ticker/{base}usd/
Rate Limit: High (no key required)
ICP Support: No
"""

import logging

from ..Asset import Asset
from ..PriceQuote import PriceQuote
from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BitstampFetcher(BaseFetcher):
    """Fetcher for Bitstamp public API.

    Lists BTC and ETH against USD but not ICP.
    No API key required.
    """

    name = "bitstamp"
    BASE_URL = "https://www.bitstamp.net/api/v2"

    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Fetch price from Bitstamp.

        The ticker's ``timestamp`` (unix seconds) becomes the observation time.

        :param asset: Asset to price.
        :returns: Quote or None on failure.
        """
        if not self.supports_asset(asset):
            return None

        pair = f"{asset.pair_base}{asset.pair_quote}"
        url = f"{self.BASE_URL}/ticker/{pair}/"

        try:
            response = await self._get(url)
            data = response.json()

            if "last" not in data:
                logger.warning(f"[bitstamp] No 'last' price for {pair}: {data}")
                return None

            observed_at = float(data["timestamp"]) if "timestamp" in data else None
            return self._quote(asset, data["last"], observed_at)

        except FetcherError as e:
            logger.warning(f"[bitstamp] Failed to fetch {pair}: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[bitstamp] Failed to parse response for {pair}: {e}")
            return None

    def supports_asset(self, asset: Asset) -> bool:
        """Check if asset is listed (Bitstamp doesn't list ICP)."""
        return asset is not Asset.ICP
