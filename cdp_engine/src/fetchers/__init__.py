"""USD price fetchers for the collateral assets.

Importing this package registers every venue below. Build instances by
source name:

.. code-block:: python

    from cdp_engine.src.fetchers import get_fetcher

    kraken = get_fetcher("kraken", timeout=5.0)
    quotes = await kraken.fetch_batch([Asset.ICP, Asset.CKBTC])

    gecko = get_fetcher("coingecko", api_key="demo:CG-xxxxx")
"""

from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)
from .binance import BinanceFetcher
from .bitstamp import BitstampFetcher
from .coinbase import CoinbaseFetcher
from .coingecko import CoinGeckoFetcher
from .kraken import KrakenFetcher

__all__ = [
    "FETCHER_REGISTRY",
    "BaseFetcher",
    "BinanceFetcher",
    "BitstampFetcher",
    "CoinGeckoFetcher",
    "CoinbaseFetcher",
    "FetcherConfigError",
    "FetcherError",
    "FetcherHTTPError",
    "KrakenFetcher",
    "get_available_fetchers",
    "get_fetcher",
    "register_fetcher",
]
