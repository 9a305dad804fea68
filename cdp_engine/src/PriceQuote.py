"""Price records exchanged between adapters, the oracle and its consumers."""

from __future__ import annotations

from dataclasses import dataclass, field

from .Asset import Asset
from .fixed_point import format_fixed


@dataclass(frozen=True)
class PriceQuote:
    """A single venue's observation of an asset price.

    :ivar asset: Asset being quoted.
    :ivar price: Fixed-point price in USD.
    :ivar source: Name of the venue that produced the quote.
    :ivar observed_at: Unix timestamp of the observation.
    """

    asset: Asset
    price: int
    source: str
    observed_at: float

    def __str__(self) -> str:
        return f"{self.source}=${format_fixed(self.price)}"


@dataclass(frozen=True)
class AggregatedPrice:
    """The trusted price for one asset, published by a successful round.

    :ivar asset: Asset the price belongs to.
    :ivar value: Fixed-point median of the accepted quotes.
    :ivar computed_at: Unix timestamp of the aggregation.
    :ivar observed_at: Newest observation timestamp among accepted quotes.
        Staleness is measured from this value.
    :ivar quorum_met: Always True for a published price.
    :ivar source_count: Number of quotes in the final median.
    :ivar sources: Names of the contributing sources.
    :ivar dropped: Outlier quotes excluded by the deviation filter.
    """

    asset: Asset
    value: int
    computed_at: float
    observed_at: float
    quorum_met: bool
    source_count: int
    sources: tuple[str, ...] = ()
    dropped: dict[str, int] = field(default_factory=dict)

    def age(self, now: float) -> float:
        """Seconds elapsed since the newest accepted observation."""
        return now - self.observed_at
