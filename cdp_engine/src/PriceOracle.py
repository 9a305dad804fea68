"""PriceOracle: Round-based price aggregation with quorum and staleness policy.

Source adapters submit quotes into the current round for an asset. An
aggregation round filters stale quotes, runs the two-stage median of
``PriceAggregator`` and, on success, atomically replaces the published
``AggregatedPrice`` for that asset.

Failures are fail-closed: a failed round raises and leaves the previously
published price in place, whose staleness clock keeps running. Readers go
through ``get_price``, which refuses to return a stale price.

.. code-block:: python

    >>> oracle = PriceOracle(sources=["coinbase", "kraken", "coingecko"])
    >>> oracle.submit_quote(PriceQuote(Asset.CKBTC, to_fixed("100"), "coinbase", now))
    >>> oracle.submit_quote(PriceQuote(Asset.CKBTC, to_fixed("101"), "kraken", now))
    >>> oracle.aggregate(Asset.CKBTC).value
    10050000000
"""

from __future__ import annotations

import logging
import time
from collections import deque

from .Asset import Asset
from .errors import (
    DeviationTooHigh,
    DriftTooLarge,
    InsufficientQuorum,
    InvalidQuote,
    NoPrice,
    OracleError,
    StalePrice,
    UnknownSource,
)
from .fixed_point import format_fixed
from .PriceAggregator import (
    DRIFT_TOO_LARGE,
    INSUFFICIENT_SOURCES,
    TOO_MANY_OUTLIERS,
    PriceAggregator,
)
from .PriceQuote import AggregatedPrice, PriceQuote

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_SECONDS = 300  # 5 minutes
DEFAULT_MAX_FUTURE_SKEW_SECONDS = 30
DEFAULT_HISTORY_SIZE = 100


class PriceOracle:
    """Per-asset quote rounds and the published trusted prices.

    :ivar sources: Registered source names; quotes from others are rejected.
    :ivar staleness_seconds: Max age of quotes and of the published price.
    :ivar max_future_skew_seconds: Tolerance for quotes dated in the future.
    :ivar aggregator: Pure two-stage median implementation.
    """

    def __init__(
        self,
        sources: list[str],
        min_sources: int = 2,
        max_deviation_bps: int = 500,
        drift_limit_bps: int | None = None,
        staleness_seconds: float = DEFAULT_STALENESS_SECONDS,
        max_future_skew_seconds: float = DEFAULT_MAX_FUTURE_SKEW_SECONDS,
        source_weights: dict[str, int] | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """Initialize the oracle.

        :param sources: Source names allowed to submit quotes.
        :param min_sources: Quorum of fresh, non-outlier quotes (default: 2).
        :param max_deviation_bps: Outlier threshold vs the median (default: 500).
        :param drift_limit_bps: Optional max move vs the published price.
        :param staleness_seconds: Freshness window (default: 300).
        :param max_future_skew_seconds: Allowed clock skew for quote timestamps.
        :param source_weights: Optional per-source weights for the median.
        :param history_size: Superseded prices kept per asset for audit.
        :raises ValueError: If parameters are invalid.
        """
        if not sources:
            raise ValueError("At least one price source must be registered")
        if min_sources > len(sources):
            raise ValueError(
                f"min_sources ({min_sources}) exceeds registered sources ({len(sources)})"
            )
        if staleness_seconds <= 0:
            raise ValueError("staleness_seconds must be positive")
        unknown_weighted = set(source_weights or {}) - set(sources)
        if unknown_weighted:
            raise ValueError(f"Weights given for unknown sources: {sorted(unknown_weighted)}")

        self.sources = list(sources)
        self.staleness_seconds = staleness_seconds
        self.max_future_skew_seconds = max_future_skew_seconds
        self.aggregator = PriceAggregator(
            min_sources=min_sources,
            max_deviation_bps=max_deviation_bps,
            drift_limit_bps=drift_limit_bps,
            weights=source_weights,
        )

        self._rounds: dict[Asset, dict[str, PriceQuote]] = {}
        self._published: dict[Asset, AggregatedPrice] = {}
        self._history: dict[Asset, deque[AggregatedPrice]] = {}
        self._history_size = history_size

    @property
    def min_sources(self) -> int:
        """Configured quorum."""
        return self.aggregator.min_sources

    def submit_quote(self, quote: PriceQuote) -> None:
        """Record a source's quote in the current round for its asset.

        A later submission from the same source replaces the earlier one.

        :param quote: Quote produced by a source adapter.
        :raises UnknownSource: If the source is not registered.
        :raises InvalidQuote: If the price is not positive.
        """
        if quote.source not in self.sources:
            raise UnknownSource(quote.asset, quote.source)
        if quote.price <= 0:
            raise InvalidQuote(quote.asset, f"non-positive price from {quote.source}")

        self._rounds.setdefault(quote.asset, {})[quote.source] = quote
        logger.debug(f"{quote.asset}: quote {quote} at {quote.observed_at:.0f}")

    def pending_quotes(self, asset: Asset) -> list[PriceQuote]:
        """Quotes currently held in the round for an asset."""
        return list(self._rounds.get(asset, {}).values())

    def _usable_quotes(self, asset: Asset, now: float) -> dict[str, PriceQuote]:
        """Drop stale, future-dated and already-consumed quotes from the round."""
        round_quotes = self._rounds.get(asset, {})
        previous = self._published.get(asset)
        usable: dict[str, PriceQuote] = {}

        for source, quote in list(round_quotes.items()):
            age = now - quote.observed_at
            if age > self.staleness_seconds:
                logger.debug(f"{asset}: discarding stale quote {quote} ({age:.0f}s old)")
                del round_quotes[source]
                continue
            if -age > self.max_future_skew_seconds:
                logger.warning(
                    f"{asset}: discarding future-dated quote {quote} ({-age:.0f}s ahead)"
                )
                del round_quotes[source]
                continue
            if previous is not None and quote.observed_at <= previous.observed_at:
                del round_quotes[source]
                continue
            usable[source] = quote

        return usable

    def aggregate(self, asset: Asset) -> AggregatedPrice:
        """Compute and publish the trusted price for one asset.

        :param asset: Asset to aggregate.
        :returns: The newly published AggregatedPrice.
        :raises InsufficientQuorum: If fewer than min_sources fresh quotes exist.
        :raises DeviationTooHigh: If the outlier filter leaves less than a quorum.
        :raises DriftTooLarge: If a drift limit is set and was exceeded.
        """
        now = time.time()
        usable = self._usable_quotes(asset, now)
        previous = self._published.get(asset)

        # Drift is measured against a live price only, so a sustained move
        # re-anchors once the old value has gone stale
        drift_reference = None
        if previous is not None:
            if previous.age(now) <= self.staleness_seconds:
                drift_reference = previous.value
            elif self.aggregator.drift_limit_bps is not None:
                logger.info(
                    f"{asset}: previous price ${format_fixed(previous.value)} is stale, "
                    f"skipping drift check"
                )

        result = self.aggregator.aggregate(
            {source: quote.price for source, quote in usable.items()},
            previous_price=drift_reference,
        )

        if not result.success:
            meta = result.metadata
            error: OracleError
            if result.error == INSUFFICIENT_SOURCES:
                error = InsufficientQuorum(asset, meta.get("available", 0), self.min_sources)
            elif result.error == TOO_MANY_OUTLIERS:
                error = DeviationTooHigh(asset, dict(meta.get("dropped", {})))
            elif result.error == DRIFT_TOO_LARGE:
                error = DriftTooLarge(asset, meta.get("drift_bps", 0))
            else:
                error = OracleError(asset, f"aggregation failed ({result.error})")
            logger.warning(
                f"{asset}: Aggregation failed ({result.error}): "
                f"quotes=[{', '.join(str(q) for q in usable.values())}]"
            )
            raise error

        meta = result.metadata
        accepted = meta.get("sources", [])
        assert result.price is not None
        published = AggregatedPrice(
            asset=asset,
            value=result.price,
            computed_at=now,
            observed_at=max(usable[s].observed_at for s in accepted),
            quorum_met=True,
            source_count=len(accepted),
            sources=tuple(accepted),
            dropped=dict(meta.get("dropped", {})),
        )

        if previous is not None:
            history = self._history.setdefault(asset, deque(maxlen=self._history_size))
            history.append(previous)
        self._published[asset] = published
        self._rounds[asset] = {}

        log_msg = (
            f"{asset}: ${format_fixed(published.value)} "
            f"(median of [{', '.join(str(usable[s]) for s in accepted)}]"
        )
        if published.dropped:
            dropped_strs = [f"{s}=${format_fixed(p)}" for s, p in published.dropped.items()]
            log_msg += f", dropped: [{', '.join(dropped_strs)}]"
        logger.info(log_msg + ")")

        return published

    def aggregate_all(self) -> tuple[dict[Asset, AggregatedPrice], dict[Asset, OracleError]]:
        """Aggregate every asset with pending quotes, each independently.

        :returns: Tuple of (published prices, failures) keyed by asset.
        """
        published: dict[Asset, AggregatedPrice] = {}
        failures: dict[Asset, OracleError] = {}
        for asset in list(self._rounds):
            try:
                published[asset] = self.aggregate(asset)
            except OracleError as e:
                failures[asset] = e
        return published, failures

    def get_price(self, asset: Asset) -> AggregatedPrice:
        """Return the published price if it is still fresh.

        Never waits for a fresher round.

        :param asset: Asset to read.
        :returns: Current AggregatedPrice.
        :raises NoPrice: If the asset was never aggregated.
        :raises StalePrice: If the price is older than the staleness window.
        """
        published = self._published.get(asset)
        if published is None:
            raise NoPrice(asset)

        age = published.age(time.time())
        if age > self.staleness_seconds:
            raise StalePrice(asset, age)
        return published

    def is_fresh(self, asset: Asset) -> bool:
        """Check whether ``get_price`` would currently succeed."""
        try:
            self.get_price(asset)
        except (NoPrice, StalePrice):
            return False
        return True

    def price_history(self, asset: Asset) -> list[AggregatedPrice]:
        """Superseded prices for an asset, oldest first."""
        return list(self._history.get(asset, ()))
