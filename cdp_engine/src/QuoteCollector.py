"""QuoteCollector: Concurrent quote gathering from the configured venues.

This module drives one price round:
- Asks every venue not in backoff for all the assets it lists, using a single
  batch request where the venue supports one
- Bounds each venue by a timeout so a slow venue cannot stall the round
- Feeds successes and failures to the SourceManager backoff
- Submits the quotes to the PriceOracle and aggregates each asset independently

A venue that produced no quote at all counts as failed. A failed asset does
not prevent the other assets from publishing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .Asset import Asset
from .errors import OracleError
from .SourceManager import SourceManager

if TYPE_CHECKING:
    from .fetchers import BaseFetcher
    from .PriceOracle import PriceOracle
    from .PriceQuote import AggregatedPrice, PriceQuote

logger = logging.getLogger(__name__)


class QuoteCollector:
    """Collects quotes from price venues and runs the oracle's rounds.

    :ivar oracle: Oracle receiving the quotes.
    :ivar fetchers: Dict mapping source names to fetcher instances.
    :ivar assets: Assets priced every round.
    :ivar fetch_timeout: Timeout for one venue's requests in seconds.
    :ivar source_manager: Per-venue backoff bookkeeping.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        fetchers: dict[str, BaseFetcher],
        assets: list[Asset],
        fetch_timeout: float = 10.0,
        source_manager: SourceManager | None = None,
    ) -> None:
        """Initialize the collector.

        :param oracle: Oracle receiving the quotes.
        :param fetchers: Dict mapping source names to fetcher instances.
        :param assets: Assets to price.
        :param fetch_timeout: Timeout for fetch requests (default: 10.0).
        :param source_manager: Optional backoff tracker; one is created if omitted.
        :raises ValueError: If a fetcher is not registered with the oracle, or an
            asset is listed by no fetcher.
        """
        unregistered = [name for name in fetchers if name not in oracle.sources]
        if unregistered:
            raise ValueError(f"Sources not registered with the oracle: {unregistered}")
        if not assets:
            raise ValueError("At least one asset must be collected")

        self.oracle = oracle
        self.fetchers = fetchers
        self.assets = list(assets)
        self.fetch_timeout = fetch_timeout
        self.source_manager = source_manager or SourceManager(list(fetchers))

        self.asset_sources: dict[Asset, list[str]] = {}
        for asset in self.assets:
            supported = [
                name for name, fetcher in fetchers.items() if fetcher.supports_asset(asset)
            ]
            if not supported:
                raise ValueError(
                    f"No configured sources support {asset}. Sources: {list(fetchers)}"
                )
            self.asset_sources[asset] = supported
            logger.info(f"{asset}: supported by {supported}")

    async def fetch_quotes(self) -> dict[str, dict[Asset, PriceQuote | None]]:
        """Fetch all assets from every active venue concurrently.

        :returns: Dict mapping source name to {asset: quote or None}.
        """
        active = self.source_manager.active_sources()
        source_assets: dict[str, list[Asset]] = {}
        for source in active:
            fetcher = self.fetchers.get(source)
            if fetcher is None:
                continue
            assets = [a for a in self.assets if fetcher.supports_asset(a)]
            if assets:
                source_assets[source] = assets

        if not source_assets:
            return {}

        tasks = [
            self._fetch_source(source, assets) for source, assets in source_assets.items()
        ]
        source_results = await asyncio.gather(*tasks, return_exceptions=True)

        results: dict[str, dict[Asset, PriceQuote | None]] = {}
        for (source, assets), result in zip(
            source_assets.items(), source_results, strict=True
        ):
            if isinstance(result, BaseException):
                logger.warning(f"[{source}] Fetch exception: {result}")
                results[source] = {asset: None for asset in assets}
            else:
                results[source] = result
        return results

    async def _fetch_source(
        self, source: str, assets: list[Asset]
    ) -> dict[Asset, PriceQuote | None]:
        """Fetch all assets from a single venue.

        Uses batch fetching if supported, otherwise concurrent individual fetches.

        :param source: Source name.
        :param assets: Assets to fetch.
        :returns: Dict mapping asset to quote or None.
        """
        fetcher = self.fetchers[source]
        try:
            if fetcher.supports_batch:
                logger.debug(f"[{source}] Batch fetching {len(assets)} assets")
                return await asyncio.wait_for(
                    fetcher.fetch_batch(assets),
                    timeout=self.fetch_timeout,
                )
            logger.debug(f"[{source}] Individual fetching {len(assets)} assets")
            quotes = await asyncio.gather(
                *(self._fetch_single(fetcher, asset) for asset in assets)
            )
            return dict(zip(assets, quotes, strict=True))
        except asyncio.TimeoutError:
            logger.warning(f"[{source}] Batch fetch timeout")
            return {asset: None for asset in assets}

    async def _fetch_single(self, fetcher: BaseFetcher, asset: Asset) -> PriceQuote | None:
        """Fetch a single asset with timeout.

        :param fetcher: Fetcher instance to use.
        :param asset: Asset to fetch.
        :returns: Quote or None on failure.
        """
        try:
            return await asyncio.wait_for(fetcher.fetch(asset), timeout=self.fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{fetcher.name}] Timeout fetching {asset}")
            return None

    def submit(self, results: dict[str, dict[Asset, PriceQuote | None]]) -> int:
        """Record venue health and hand the quotes to the oracle.

        :param results: Output of ``fetch_quotes``.
        :returns: Number of quotes accepted by the oracle.
        """
        accepted = 0
        for source, quotes in results.items():
            good = [q for q in quotes.values() if q is not None]
            if not good:
                missing = ", ".join(a.value for a in quotes)
                backoff = self.source_manager.record_failure(source, f"no quote for {missing}")
                logger.warning(f"[{source}] No quotes, backoff {backoff:.1f}s")
                continue

            self.source_manager.record_success(source)
            for quote in good:
                try:
                    self.oracle.submit_quote(quote)
                    accepted += 1
                except OracleError as e:
                    logger.warning(f"[{source}] Quote rejected: {e}")
        return accepted

    async def collect(
        self,
    ) -> tuple[dict[Asset, AggregatedPrice], dict[Asset, OracleError]]:
        """Run one full round: fetch, submit and aggregate every asset.

        :returns: Tuple of (published prices, failures) keyed by asset.
        """
        results = await self.fetch_quotes()
        if not results:
            logger.warning("All sources in backoff, skipping fetch")
        self.submit(results)

        published: dict[Asset, AggregatedPrice] = {}
        failures: dict[Asset, OracleError] = {}
        for asset in self.assets:
            try:
                published[asset] = self.oracle.aggregate(asset)
            except OracleError as e:
                failures[asset] = e
        return published, failures
