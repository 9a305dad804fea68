"""PriceAggregator: Pure quorum median over one round of source prices.

A round is a dict of source name to fixed-point price. The aggregator takes
a first median over every positive price, discards sources further than
``max_deviation_bps`` from it, and publishes the median of what is left. An
optional drift limit then compares that candidate with the previously
published value.

Nothing here raises on bad data. Each failure comes back as an
``AggregationResult`` with ``price=None`` and an error code in its metadata
(``insufficient_sources``, ``too_many_outliers`` or ``drift_too_large``).
The oracle turns those codes into exceptions.

.. code-block:: python

    >>> aggregator = PriceAggregator(min_sources=2, max_deviation_bps=500)
    >>> round_prices = {"coinbase": 100_00000000, "kraken": 101_00000000, "rogue": 150_00000000}
    >>> result = aggregator.aggregate(round_prices)
    >>> result.price
    10050000000
    >>> result.metadata["dropped"]
    {'rogue': 15000000000}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict

from .fixed_point import BPS

INSUFFICIENT_SOURCES = "insufficient_sources"
TOO_MANY_OUTLIERS = "too_many_outliers"
DRIFT_TOO_LARGE = "drift_too_large"


class AggregationError(TypedDict, total=False):
    """Metadata of a failed round. Only the keys relevant to ``error`` are set.

    :ivar error: One of the module's error codes.
    :ivar available: Usable prices in the round (``insufficient_sources``).
    :ivar dropped: Outliers by source (``too_many_outliers``).
    :ivar drift_bps: Move vs the published price (``drift_too_large``).
    :ivar previous_price: Published price the drift was measured against.
    :ivar candidate_price: Median that was refused.
    """

    error: str
    available: int
    dropped: dict[str, int]
    drift_bps: int
    previous_price: int
    candidate_price: int


class AggregationMetadata(TypedDict, total=False):
    """Metadata of a published round.

    :ivar sources: Sources that survived the deviation filter.
    :ivar dropped: Outliers by source.
    :ivar count: ``len(sources)``.
    :ivar initial_median: First-pass median, outliers included.
    """

    sources: list[str]
    dropped: dict[str, int]
    count: int
    initial_median: int


@dataclass
class AggregationResult:
    """Outcome of one ``PriceAggregator.aggregate`` call.

    :ivar price: Published fixed-point price, None when the round failed.
    :ivar metadata: ``AggregationMetadata`` or ``AggregationError``.
    """

    price: int | None
    metadata: AggregationMetadata | AggregationError

    @property
    def success(self) -> bool:
        return self.price is not None

    @property
    def error(self) -> str | None:
        return None if self.success else self.metadata.get("error")


def weighted_median(prices: dict[str, int], weights: dict[str, int] | None = None) -> int:
    """Median of source prices, each source counted by its integer weight.

    With equal weights this is the ordinary median: the mean of the two middle
    values for an even count, rounded down to the nearest fixed-point unit.

    :param prices: Dict mapping source name to fixed-point price.
    :param weights: Optional dict mapping source name to a positive weight.
        Sources missing from the dict weigh 1.
    :returns: Weighted median price.
    :raises ValueError: If prices is empty.

    .. code-block:: python

        >>> weighted_median({"a": 100, "b": 101, "c": 150})
        101
        >>> weighted_median({"a": 100, "b": 101, "c": 150}, {"c": 5})
        150
    """
    if not prices:
        raise ValueError("weighted_median() requires at least one price")

    ordered = sorted(prices.items(), key=lambda item: (item[1], item[0]))
    weighted = [(price, (weights or {}).get(source, 1)) for source, price in ordered]
    total = sum(weight for _, weight in weighted)

    cumulative = 0
    for index, (price, weight) in enumerate(weighted):
        cumulative += weight
        if 2 * cumulative > total:
            return price
        if 2 * cumulative == total:
            # Exactly half the weight sits at or below this price
            return (price + weighted[index + 1][0]) // 2

    # Unreachable: cumulative reaches total on the last element
    return weighted[-1][0]


class PriceAggregator:
    """Quorum, deviation and drift rules for a single asset's rounds.

    :ivar min_sources: Quorum; both passes need this many prices.
    :ivar max_deviation_bps: Outlier threshold around the first median.
    :ivar drift_limit_bps: Largest accepted move vs the previous price, or
        None for no limit.
    :ivar weights: Per-source median weights; absent sources weigh 1.
    """

    def __init__(
        self,
        min_sources: int = 2,
        max_deviation_bps: int = 500,
        drift_limit_bps: int | None = None,
        weights: dict[str, int] | None = None,
    ) -> None:
        """
        :raises ValueError: On a quorum below 1, a non-positive threshold or
            a weight below 1.
        """
        if min_sources < 1:
            raise ValueError("min_sources must be at least 1")
        if max_deviation_bps <= 0:
            raise ValueError("max_deviation_bps must be positive")
        if drift_limit_bps is not None and drift_limit_bps <= 0:
            raise ValueError("drift_limit_bps must be positive if specified")
        if weights and any(w < 1 for w in weights.values()):
            raise ValueError("source weights must be positive integers")

        self.min_sources = min_sources
        self.max_deviation_bps = max_deviation_bps
        self.drift_limit_bps = drift_limit_bps
        self.weights = dict(weights or {})

    def _deviates(self, price: int, reference: int) -> bool:
        return abs(price - reference) * BPS > self.max_deviation_bps * reference

    def _split_outliers(
        self, prices: dict[str, int], reference: int
    ) -> tuple[dict[str, int], dict[str, int]]:
        kept: dict[str, int] = {}
        dropped: dict[str, int] = {}
        for source, price in prices.items():
            (dropped if self._deviates(price, reference) else kept)[source] = price
        return kept, dropped

    def aggregate(
        self,
        prices: dict[str, int | None],
        *,
        previous_price: int | None = None,
    ) -> AggregationResult:
        """Run one round.

        :param prices: Source name to fixed-point price; None marks a source
            that had nothing to offer this round.
        :param previous_price: Last published price. Drift is only checked
            when this and ``drift_limit_bps`` are both set.
        :returns: The published price with ``AggregationMetadata``, or a
            failed result with ``AggregationError``.
        """
        usable = {source: p for source, p in prices.items() if p is not None and p > 0}
        if len(usable) < self.min_sources:
            return AggregationResult(
                price=None,
                metadata={"error": INSUFFICIENT_SOURCES, "available": len(usable)},
            )

        initial_median = weighted_median(usable, self.weights)
        kept, dropped = self._split_outliers(usable, initial_median)
        if len(kept) < self.min_sources:
            return AggregationResult(
                price=None,
                metadata={"error": TOO_MANY_OUTLIERS, "dropped": dropped},
            )

        candidate = weighted_median(kept, self.weights)

        if previous_price is not None and self.drift_limit_bps is not None:
            drift_bps = abs(candidate - previous_price) * BPS // previous_price
            if drift_bps > self.drift_limit_bps:
                return AggregationResult(
                    price=None,
                    metadata={
                        "error": DRIFT_TOO_LARGE,
                        "drift_bps": drift_bps,
                        "previous_price": previous_price,
                        "candidate_price": candidate,
                    },
                )

        return AggregationResult(
            price=candidate,
            metadata={
                "sources": list(kept),
                "dropped": dropped,
                "count": len(kept),
                "initial_median": initial_median,
            },
        )
