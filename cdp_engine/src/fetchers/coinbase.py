"""Coinbase Exchange fetcher.

Endpoint: https://api.exchange.coinbase.com/products/{BASE}-USD/ticker
Rate Limit: High (no key required)
ICP Support: Yes
"""

import logging
from datetime import datetime

from ..Asset import Asset
from ..PriceQuote import PriceQuote
from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinbaseFetcher(BaseFetcher):
    """Fetcher for Coinbase Exchange API.

    Supports native USD pairs for every collateral asset.
    No API key required for public ticker endpoint.
    """

    name = "coinbase"
    BASE_URL = "https://api.exchange.coinbase.com"

    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Fetch price from Coinbase Exchange.

        The ticker's ``time`` field, when present, becomes the observation time.

        :param asset: Asset to price.
        :returns: Quote or None on failure.
        """
        symbol = f"{asset.pair_base.upper()}-{asset.pair_quote.upper()}"
        url = f"{self.BASE_URL}/products/{symbol}/ticker"

        try:
            response = await self._get(url)
            data = response.json()

            if "price" not in data:
                logger.warning(f"[coinbase] No price in response for {symbol}: {data}")
                return None

            observed_at = None
            if data.get("time"):
                observed_at = datetime.fromisoformat(
                    data["time"].replace("Z", "+00:00")
                ).timestamp()

            return self._quote(asset, data["price"], observed_at)

        except FetcherError as e:
            logger.warning(f"[coinbase] Failed to fetch {symbol}: {e}")
            return None
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[coinbase] Failed to parse response for {symbol}: {e}")
            return None
