"""CoinGecko fetcher.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies=usd
Rate Limit: 30 calls/min (free), higher with API key
ICP Support: Yes (id: "internet-computer")
"""

import logging

from ..Asset import Asset
from ..PriceQuote import PriceQuote
from .base import BaseFetcher, FetcherConfigError, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinGeckoFetcher(BaseFetcher):
    """Fetcher for CoinGecko API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx

    Quotes carry CoinGecko's ``last_updated_at`` as their observation time, so
    a lagging aggregate is caught by the oracle's staleness filter.
    """

    name = "coingecko"
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    COIN_IDS = {
        "icp": "internet-computer",
        "btc": "bitcoin",
        "eth": "ethereum",
    }

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize with optional demo: prefix handling.

        :raises FetcherConfigError: If the key is a bare ``demo:`` prefix.
        """
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]  # Strip "demo:" prefix
            if not api_key:
                raise FetcherConfigError("CoinGecko demo key is empty")
        super().__init__(api_key=api_key, timeout=timeout)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    def _headers(self) -> dict[str, str] | None:
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def supports_asset(self, asset: Asset) -> bool:
        return asset.pair_base in self.COIN_IDS

    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Fetch price from CoinGecko.

        :param asset: Asset to price.
        :returns: Quote or None on failure.
        """
        return (await self.fetch_batch([asset])).get(asset)

    @property
    def supports_batch(self) -> bool:
        """CoinGecko supports batch fetching multiple coins in one request."""
        return True

    async def fetch_batch(self, assets: list[Asset]) -> dict[Asset, PriceQuote | None]:
        """Fetch quotes for several assets in a single API call.

        :param assets: Assets to fetch.
        :returns: Dict mapping asset to quote or None.
        """
        results: dict[Asset, PriceQuote | None] = {asset: None for asset in assets}
        coin_ids = {
            asset: self.COIN_IDS[asset.pair_base]
            for asset in assets
            if self.supports_asset(asset)
        }
        if not coin_ids:
            return results

        try:
            response = await self._get(
                f"{self.base_url}/simple/price",
                params={
                    "ids": ",".join(sorted(set(coin_ids.values()))),
                    "vs_currencies": "usd",
                    "include_last_updated_at": "true",
                },
                headers=self._headers(),
            )
            data = response.json()

            for asset, coin_id in coin_ids.items():
                entry = data.get(coin_id)
                if not entry or "usd" not in entry:
                    logger.warning(f"[coingecko] No usd price for {coin_id}: {entry}")
                    continue
                updated = entry.get("last_updated_at")
                results[asset] = self._quote(
                    asset, entry["usd"], float(updated) if updated else None
                )

        except FetcherError as e:
            logger.warning(f"[coingecko] Fetch failed: {e}")
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[coingecko] Failed to parse response: {e}")

        return results
