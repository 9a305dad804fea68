"""Asset: Supported collateral kinds and their risk parameters.

Each collateral kind is priced through a USD pair on the external venues.
The pair identifier follows the ``aggregated/<base>/<quote>`` convention so
that every venue's quote for the same asset lands in the same round.

.. code-block:: python

    >>> Asset.from_string("ckbtc")
    <Asset.CKBTC: 'ckbtc'>
    >>> Asset.CKBTC.pair_base
    'btc'
    >>> str(Asset.CKETH)
    'aggregated/eth/usd'
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .fixed_point import BPS

DEFAULT_LTV_BPS = 7500
DEFAULT_LIQUIDATION_BONUS_BPS = 1000


class Asset(Enum):
    """An enumerated collateral kind.

    The value is the collateral wrapper's name. ``pair_base`` is the symbol
    venues quote it under.
    """

    ICP = "icp"
    CKBTC = "ckbtc"
    CKETH = "cketh"

    @property
    def pair_base(self) -> str:
        """Base symbol used by price venues."""
        return _PAIR_BASES[self]

    @property
    def pair_quote(self) -> str:
        """Quote currency; every asset is priced in USD."""
        return "usd"

    def __str__(self) -> str:
        """Return the aggregated pair identifier."""
        return f"aggregated/{self.pair_base}/{self.pair_quote}"

    @classmethod
    def from_string(cls, name: str) -> Asset:
        """Parse an asset from its wrapper name or its venue symbol.

        :param name: Name such as "ckbtc", "CKETH" or "btc".
        :returns: Matching Asset.
        :raises ValueError: If the name matches no supported asset.

        .. code-block:: python

            >>> Asset.from_string("eth")
            <Asset.CKETH: 'cketh'>
        """
        key = name.strip().lower()
        for asset in cls:
            if key in (asset.value, asset.pair_base):
                return asset
        supported = ", ".join(a.value for a in cls)
        raise ValueError(f"Unknown asset '{name}'. Supported: {supported}")


_PAIR_BASES: dict[Asset, str] = {
    Asset.ICP: "icp",
    Asset.CKBTC: "btc",
    Asset.CKETH: "eth",
}


@dataclass(frozen=True)
class AssetParams:
    """Risk parameters for one collateral asset.

    :ivar ltv_bps: Mint-time loan-to-value ceiling in basis points.
    :ivar liquidation_bonus_bps: Bonus paid to the keeper on seized value.
    :ivar min_collateral: Smallest non-zero locked amount (fixed-point).
    """

    ltv_bps: int = DEFAULT_LTV_BPS
    liquidation_bonus_bps: int = DEFAULT_LIQUIDATION_BONUS_BPS
    min_collateral: int = 0

    def __post_init__(self) -> None:
        if not 0 < self.ltv_bps < BPS:
            raise ValueError("ltv_bps must be between 0 and 10000 exclusive")
        if not 0 <= self.liquidation_bonus_bps < BPS:
            raise ValueError("liquidation_bonus_bps must be between 0 and 9999")
        if self.min_collateral < 0:
            raise ValueError("min_collateral must not be negative")


def default_asset_params() -> dict[Asset, AssetParams]:
    """Default parameters for every supported asset."""
    return {asset: AssetParams() for asset in Asset}
