"""Binance fetcher with self-contained USD conversion.

Binance offers USDT pairs for the collateral assets. For each asset this
fetcher requests BASE/USDT and USDT/USD in a single call and multiplies them.

Endpoint: https://api.binance.com/api/v3/ticker/price
Rate Limit: High (no key required for public endpoints)
ICP Support: Yes (via USDT pair + USDT/USD conversion)
"""

import json
import logging
from decimal import Decimal

from ..Asset import Asset
from ..fixed_point import BPS, NUM_DECIMALS, SCALE, mul_fixed, to_fixed
from ..PriceQuote import PriceQuote
from .base import BaseFetcher, FetcherError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BinanceFetcher(BaseFetcher):
    """Binance fetcher with internal USDT to USD conversion.

    Includes USDT depeg detection - if USDT deviates >2% from 1.0,
    no quotes are produced.
    """

    name = "binance"
    BASE_URL = "https://api.binance.com/api/v3"
    USDT_RATE_SYMBOL = "USDTUSD"

    # USDT depeg threshold (2%)
    USDT_DEPEG_THRESHOLD_BPS = 200

    def _symbol(self, asset: Asset) -> str:
        return f"{asset.pair_base.upper()}USDT"

    def _is_depeg(self, rate: int) -> bool:
        """Check if stablecoin has depegged (>2% from 1.0)."""
        return abs(rate - SCALE) * BPS > self.USDT_DEPEG_THRESHOLD_BPS * SCALE

    async def fetch(self, asset: Asset) -> PriceQuote | None:
        """Fetch price from Binance.

        :param asset: Asset to price.
        :returns: Quote or None on failure.
        """
        return (await self.fetch_batch([asset])).get(asset)

    async def _fetch_symbols(self, symbols: list[str]) -> dict[str, int | None]:
        """Fetch fixed-point prices for several symbols in a single API call.

        :param symbols: List of Binance symbols.
        :returns: Dict mapping symbol to price (or None if missing).
        """
        url = f"{self.BASE_URL}/ticker/price"
        result: dict[str, int | None] = {s: None for s in symbols}
        try:
            response = await self._get(url, params={"symbols": json.dumps(symbols)})
            for item in response.json():
                if "symbol" in item and "price" in item:
                    result[item["symbol"]] = to_fixed(item["price"])
        except FetcherError as e:
            logger.warning(f"[binance] Failed to fetch symbols {symbols}: {e}")
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"[binance] Failed to parse batch response: {e}")
            return {s: None for s in symbols}
        return result

    @property
    def supports_batch(self) -> bool:
        """Binance supports batch fetching multiple symbols in one request."""
        return True

    async def fetch_batch(self, assets: list[Asset]) -> dict[Asset, PriceQuote | None]:
        """Fetch quotes for several assets in a single API call.

        :param assets: Assets to fetch.
        :returns: Dict mapping asset to quote or None.
        """
        results: dict[Asset, PriceQuote | None] = {asset: None for asset in assets}
        if not assets:
            return results

        symbols = [self._symbol(asset) for asset in assets]
        price_map = await self._fetch_symbols(symbols + [self.USDT_RATE_SYMBOL])

        usdt_rate = price_map.get(self.USDT_RATE_SYMBOL)
        if usdt_rate is None:
            logger.warning("[binance] No USDTUSD rate, cannot convert to USD")
            return results
        if self._is_depeg(usdt_rate):
            logger.warning(
                f"[binance] USDT depeg detected: rate={usdt_rate / SCALE:.4f}. "
                "Excluding from aggregation."
            )
            return results

        for asset, symbol in zip(assets, symbols, strict=True):
            usdt_price = price_map.get(symbol)
            if usdt_price is None:
                continue
            try:
                usd_price = Decimal(mul_fixed(usdt_price, usdt_rate)).scaleb(-NUM_DECIMALS)
                results[asset] = self._quote(asset, usd_price)
            except ValueError as e:
                logger.warning(f"[binance] Bad price for {symbol}: {e}")

        return results
