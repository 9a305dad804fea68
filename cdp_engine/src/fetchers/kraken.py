"""Kraken fetcher.

Endpoint: https://api.kraken.com/0/public/Ticker?pair={BASE}USD
Rate Limit: High (no key required)
ICP Support: Yes
"""

import logging

from ..Asset import Asset
from ..PriceQuote import PriceQuote
from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class KrakenFetcher(BaseFetcher):
    """Fetcher for Kraken public API.

    No API key required. Supports batching several pairs in one request.
    """

    name = "kraken"
    BASE_URL = "https://api.kraken.com/0/public"

    # Kraken uses non-standard ticker symbols
    SYMBOL_MAP = {
        "btc": "XBT",  # Kraken uses XBT instead of BTC
    }

    def _pair(self, asset: Asset) -> str:
        kraken_base = self.SYMBOL_MAP.get(asset.pair_base, asset.pair_base.upper())
        return f"{kraken_base}{asset.pair_quote.upper()}"

    @staticmethod
    def _find_pair_data(result: dict, pair: str) -> dict | None:
        """Locate a pair in a Ticker result.

        Kraken may key results with X/Z-prefixed names (``XXBTZUSD``).
        """
        if pair in result:
            return result[pair]
        for key, value in result.items():
            normalized = key.replace("X", "").replace("Z", "")
            if pair in key or normalized == pair.replace("X", "").replace("Z", ""):
                return value
        return None

    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Fetch price from Kraken.

        :param asset: Asset to price.
        :returns: Quote or None on failure.
        """
        return (await self.fetch_batch([asset])).get(asset)

    @property
    def supports_batch(self) -> bool:
        """Kraken supports batch fetching multiple pairs."""
        return True

    async def fetch_batch(self, assets: list[Asset]) -> dict[Asset, PriceQuote | None]:
        """Fetch quotes for several assets in a single API call.

        Kraken's /Ticker endpoint accepts comma-separated pairs.

        :param assets: Assets to fetch.
        :returns: Dict mapping asset to quote or None.
        """
        results: dict[Asset, PriceQuote | None] = {asset: None for asset in assets}
        if not assets:
            return results

        pairs = {asset: self._pair(asset) for asset in assets}
        url = f"{self.BASE_URL}/Ticker"

        try:
            response = await self._get(url, params={"pair": ",".join(pairs.values())})
            data = response.json()

            if data.get("error"):
                logger.warning(f"[kraken] API error for {list(pairs.values())}: {data['error']}")
                return results

            result_data = data.get("result", {})
            if not result_data:
                logger.warning("[kraken] No result in response")
                return results

            for asset, pair in pairs.items():
                pair_data = self._find_pair_data(result_data, pair)
                if pair_data is None:
                    logger.warning(f"[kraken] No ticker for {pair}")
                    continue
                # 'c' is the last trade closed array: [price, lot volume]
                try:
                    results[asset] = self._quote(asset, pair_data["c"][0])
                except (KeyError, ValueError, TypeError, IndexError) as e:
                    logger.warning(f"[kraken] Failed to parse ticker for {pair}: {e}")

        except FetcherError as e:
            logger.warning(f"[kraken] Fetch failed: {e}")
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[kraken] Failed to parse response: {e}")

        return results
